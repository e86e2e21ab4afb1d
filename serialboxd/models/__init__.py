from serialboxd.models.user import User


__all__ = [
    "User",
]
