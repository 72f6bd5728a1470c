from .config import AppConfig, load_config
from .errors import ConflictError, InvalidInputError, NotFoundError, ProgressPathError

__all__ = [
    "AppConfig",
    "load_config",
    "ConflictError",
    "InvalidInputError",
    "NotFoundError",
    "ProgressPathError",
]
