"""
Page-number pagination shared by the listing operations.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Pagination:
    """1-based page number and page size."""

    page: int = 1
    limit: int = 10

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit
