"""Exception types raised by the scraper."""


class ScraperError(Exception):
    """Base class for scraper errors."""


class ConfigError(ScraperError, ValueError):
    """Invalid or incomplete configuration. Fatal at startup."""


class FetchError(ScraperError):
    """The metrics endpoint could not be fetched for this cycle."""


class ParserInitError(ScraperError):
    """The payload cannot be decoded at all."""
