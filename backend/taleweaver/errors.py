class StoryError(Exception):
    """Base class for every error raised by the story core."""


class NotFound(StoryError):
    """A referenced node id is not in the tree."""


class InvalidChoice(StoryError):
    """The submitted choice is not pending at the current position."""


class InvalidTransition(StoryError):
    """The controller was asked to do something its current state does not allow."""


class GenerationFailure(StoryError):
    """The narrative collaborator failed (transport, auth, quota...)."""


class MalformedResponse(GenerationFailure):
    """The narrative collaborator answered, but not with a usable story segment."""


class ImageError(StoryError):
    """An uploaded image was rejected; any story in progress is unaffected."""


class ImageTooLarge(ImageError):
    """The image exceeds the 2MB upload ceiling."""


class ImageEncodingFailure(ImageError):
    """The image could not be decoded or is not a supported type."""
