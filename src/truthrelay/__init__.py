"""truthrelay: relays new Truth Social posts to Discord."""

__version__ = "0.1.0"
