from moshpit.core.config import get_config
from moshpit.core.logging import setup_logging

__all__ = ["get_config", "setup_logging"]
