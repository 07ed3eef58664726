"""
Exceptions raised by the feed pipeline.

Mandatory stages (validation, fetch, parse) raise these and let them
propagate to the job runner. Optional stages catch their own failures.
"""

from typing import Optional


class FeedPipelineError(Exception):
    """Base class for pipeline errors."""


class FeedUrlValidationError(FeedPipelineError):
    """The feed or article URL is not safe to fetch."""


class FeedFetchError(FeedPipelineError):
    """Transport failure or non-2xx response while fetching a feed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FeedParseError(FeedPipelineError):
    """The feed body could not be parsed as RSS, Atom, RDF or JSON Feed."""
