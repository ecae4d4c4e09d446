"""
freeagent-api — a small client for the FreeAgent accounting API.

OAuth2 authorization and token persistence, paginated typed accessors,
and rate-limit aware requests.
"""

__version__ = "0.1.0"
__all__ = ["FreeAgent", "FreeAgentClient", "FreeAgentConfig"]

from freeagent_api.api import FreeAgent  # noqa: E402
from freeagent_api.client import FreeAgentClient  # noqa: E402
from freeagent_api.config import FreeAgentConfig  # noqa: E402
