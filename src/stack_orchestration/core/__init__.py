from .errors import Corrupt, ErrorKind, Invalid, NotFound, Ok, Problem
from .settings import StackSettings

__all__ = ["Corrupt", "ErrorKind", "Invalid", "NotFound", "Ok", "Problem", "StackSettings"]
