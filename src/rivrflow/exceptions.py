"""
Exceptions for rivrflow operations.
"""


class RivrFlowError(Exception):
    """Base exception for rivrflow-related errors."""

    pass


class ForecastLoadError(RivrFlowError):
    """Error loading forecast data for a reach."""

    def __init__(self, reach_id: str, message: str):
        self.reach_id = reach_id
        self.message = message
        super().__init__(f"{message} (reach {reach_id})")


class FavoritesError(RivrFlowError):
    """Error reading or writing the favorites list."""

    pass


class CacheError(RivrFlowError):
    """Error reading or writing a local cache entry."""

    pass


class ParseError(RivrFlowError):
    """Error parsing a payload into rivrflow models."""

    pass


class ReturnPeriodParseError(ParseError):
    """Error parsing a return-period response."""

    pass
