"""moshpit: datamosh videos by removing keyframes from an intermediate AVI."""

__version__ = "0.1.0"
