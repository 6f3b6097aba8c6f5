"""kidguard - parental control rule sync and enforcement."""

__version__ = "0.1.0"
