"""Service layer - the facade the application talks to."""

from .search_index_service import SearchIndexService


__all__ = ["SearchIndexService"]
