"""Build unattended Debian installer ISOs from a stock netinst image."""

__version__ = "0.1.0"
