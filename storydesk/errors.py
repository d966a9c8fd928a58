class StoryDeskError(Exception):
    """Base class for domain errors raised by the services; routes map them to HTTP codes."""


class StoryNotFoundError(StoryDeskError):
    pass


class StoryAlreadyClaimedError(StoryDeskError):
    pass


class StoryAlreadyResolvedError(StoryDeskError):
    """The story already has an outcome, so it can no longer be claimed."""


class ExemplarNotFoundError(StoryDeskError):
    pass


class InvalidExemplarUrlError(StoryDeskError):
    pass


class DuplicateExemplarError(StoryDeskError):
    def __init__(self, existing_id: str):
        super().__init__("URL already submitted")
        self.existing_id = existing_id


class ExemplarFetchError(StoryDeskError):
    """The exemplar URL could not be fetched or yielded too little text."""
