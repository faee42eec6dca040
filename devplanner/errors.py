"""
Error taxonomy.

    NotFoundError    -> project / card / task index / lane / attachment absent
    ValidationError  -> bad caller input (missing title, bad enum, bad filename)
    ConflictError    -> duplicate project, duplicate prefix, bad reorder
    ConfigError      -> process configuration unusable

Callers map NotFoundError to 404 and ValidationError / ConflictError to 400.
"""


class DevPlannerError(Exception):
    """Base class for every error raised on purpose by devplanner."""
    pass


class NotFoundError(DevPlannerError):
    pass


class ProjectNotFoundError(NotFoundError):
    def __init__(self, slug: str):
        super().__init__(f"Project not found: {slug}")
        self.slug = slug


class CardNotFoundError(NotFoundError):
    def __init__(self, slug: str):
        super().__init__(f"Card not found: {slug}")
        self.slug = slug


class TaskNotFoundError(NotFoundError):
    def __init__(self, index: int):
        super().__init__(f"Task index {index} not found")
        self.index = index


class LaneNotFoundError(NotFoundError):
    def __init__(self, lane: str):
        super().__init__(f"Lane not found: {lane}")
        self.lane = lane


class AttachmentNotFoundError(NotFoundError):
    def __init__(self, filename: str):
        super().__init__(f"File not found: {filename}")
        self.filename = filename


class ValidationError(DevPlannerError):
    """Raised when caller input fails validation."""
    pass


class ConflictError(DevPlannerError):
    pass


class ProjectExistsError(ConflictError):
    def __init__(self, slug: str):
        super().__init__(f"Project already exists: {slug}")
        self.slug = slug


class PrefixConflictError(ConflictError):
    def __init__(self, prefix: str):
        super().__init__(f"Prefix already in use: {prefix}")
        self.prefix = prefix


class OrderConflictError(ConflictError):
    """A reorder named a file that is not in the lane."""

    def __init__(self, filename: str):
        super().__init__(f"Card not found in lane: {filename}")
        self.filename = filename


class ConfigError(DevPlannerError):
    """Raised when configuration is invalid or incomplete."""
    pass
