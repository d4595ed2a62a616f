"""User-facing names for generated rows."""
from .models import UserRef


def top_picks_for(user: UserRef) -> str:
    return f"Top picks for {user.display_name}"


def because_you_watched(title: str | None) -> str:
    return f"Because you watched {title or 'Title'}"
