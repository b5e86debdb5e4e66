"""Error taxonomy for price acquisition and history storage."""

from __future__ import annotations


class PriceAcquisitionError(Exception):
    """Base class for failures that leave a fetch cycle without a price."""


class UpstreamUnavailable(PriceAcquisitionError):
    """Transport failure or non-success HTTP status from the listing service."""


class InvalidUpstreamResponse(PriceAcquisitionError):
    """Malformed envelope, error status code, or empty listings array."""


class NoValidPrice(PriceAcquisitionError):
    """Every candidate listing price was unparseable or non-positive."""


class InvalidParameter(ValueError):
    """Rejected caller input, e.g. an unknown trade direction."""


class StorageCorrupt(Exception):
    """Persisted history could not be decoded."""


__all__ = [
    "PriceAcquisitionError",
    "UpstreamUnavailable",
    "InvalidUpstreamResponse",
    "NoValidPrice",
    "InvalidParameter",
    "StorageCorrupt",
]
