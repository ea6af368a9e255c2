"""Group warden: rule-based member screening and instance permission enforcement."""

__version__ = "0.1.0"
