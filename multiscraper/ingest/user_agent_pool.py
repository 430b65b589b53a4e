"""User agent pool with rotation.

Keeps a list of realistic desktop browser user agents and avoids handing
out the same one twice in a row.
"""

import logging
import random
from typing import List

logger = logging.getLogger(__name__)


class UserAgentPool:
    """Pool of desktop user agents with recent-use avoidance."""

    def __init__(self, recent_size: int = 5):
        """
        Initialize user agent pool.

        Args:
            recent_size: How many recently issued agents to avoid
        """
        self._user_agents: List[str] = self._generate_pool()
        self._recent_used: List[str] = []
        self._recent_size = min(recent_size, len(self._user_agents) - 1)

        logger.debug(f"User agent pool ready with {len(self._user_agents)} agents")

    @staticmethod
    def _generate_pool() -> List[str]:
        chrome_windows = [
            f"Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
            for version in range(120, 131)
        ]
        chrome_macos = [
            f"Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
            for version in range(120, 131)
        ]
        firefox = [
            f"Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:{version}.0) Gecko/20100101 Firefox/{version}.0"
            for version in range(121, 132)
        ]
        safari_macos = [
            f"Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/{version}.0 Safari/605.1.15"
            for version in range(16, 18)
        ]
        chrome_linux = [
            f"Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
            for version in range(120, 131)
        ]
        return chrome_windows + chrome_macos + firefox + safari_macos + chrome_linux

    def get_random(self, exclude_recent: bool = True) -> str:
        """
        Get a random user agent from the pool.

        Args:
            exclude_recent: Exclude recently used user agents

        Returns:
            User agent string
        """
        available = self._user_agents
        if exclude_recent and self._recent_used:
            available = [ua for ua in self._user_agents if ua not in self._recent_used]
            if not available:
                available = self._user_agents

        selected = random.choice(available)

        self._recent_used.append(selected)
        if len(self._recent_used) > self._recent_size:
            self._recent_used.pop(0)

        return selected

    def __len__(self) -> int:
        return len(self._user_agents)


# Global instance
user_agent_pool = UserAgentPool()
