"""ORM models. Importing this package registers every table on Base.metadata."""

from bookrec.models.book import Book, BookAuthor, BookGenre
from bookrec.models.event import PROFILE_SIGNALS, SIGNIFICANT_EVENTS, Event, EventType
from bookrec.models.preference import ProfileSignalReceipt, UserPreference
from bookrec.models.recommendation_log import RecommendationLog
from bookrec.models.user import Collection, Follow, User, UserBook

__all__ = [
    "Book",
    "BookAuthor",
    "BookGenre",
    "Collection",
    "Event",
    "EventType",
    "Follow",
    "PROFILE_SIGNALS",
    "ProfileSignalReceipt",
    "RecommendationLog",
    "SIGNIFICANT_EVENTS",
    "User",
    "UserBook",
    "UserPreference",
]
