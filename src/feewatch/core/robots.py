from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class RobotsPolicy:
    parser: RobotFileParser

    def can_fetch(self, user_agent: str, url: str) -> bool:
        return self.parser.can_fetch(user_agent, url)


def robots_url_for(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/robots.txt"


async def fetch_robots(session: aiohttp.ClientSession, url: str, user_agent: str, *, timeout_seconds: float = 20.0) -> RobotsPolicy:
    """Fetch and parse robots.txt for the host of `url`.

    A missing or unreachable robots.txt allows everything.
    """

    robots_url = robots_url_for(url)
    parser = RobotFileParser()
    parser.set_url(robots_url)
    try:
        async with session.get(
            robots_url,
            headers={"User-Agent": user_agent},
            timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        ) as resp:
            if resp.status >= 400:
                logger.info("No robots.txt at %s (status=%s); proceeding", robots_url, resp.status)
                parser.parse([])
                return RobotsPolicy(parser)
            body = await resp.text(errors="ignore")
            parser.parse(body.splitlines())
            return RobotsPolicy(parser)
    except Exception as e:
        logger.warning("robots.txt fetch error: %s (%s)", robots_url, e)
        parser.parse([])
        return RobotsPolicy(parser)


@dataclass
class RobotsCache:
    """One policy per host for the lifetime of a batch."""

    user_agent: str
    timeout_seconds: float = 20.0
    _policies: dict[str, RobotsPolicy] = field(default_factory=dict)

    async def allowed(self, session: aiohttp.ClientSession, url: str) -> bool:
        key = robots_url_for(url)
        policy = self._policies.get(key)
        if policy is None:
            policy = await fetch_robots(session, url, self.user_agent, timeout_seconds=self.timeout_seconds)
            self._policies[key] = policy
        return policy.can_fetch(self.user_agent, url)
