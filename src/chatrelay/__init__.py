"""chatrelay - WhatsApp Cloud API webhook ingestion, media pipeline and live fan-out."""

__version__ = "0.1.0"
