import html
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import quote

from content_identity.config import Config
from content_identity.errors import ParseError, ProofFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProofRequest:
    url: str
    params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


class PlatformMatcher(ABC):
    """Recognizes one platform's URL shapes and knows where its public proof text lives."""

    name: str
    patterns: Tuple[Pattern, ...] = ()

    def match(self, url: str) -> Optional[str]:
        for pattern in self.patterns:
            found = pattern.search(url)
            if found:
                return self.normalize_id(found)
        return None

    def normalize_id(self, found: "re.Match") -> str:
        return found.group("id")

    @abstractmethod
    def proof_request(self, external_id: str) -> ProofRequest:
        """Public metadata endpoint holding the proof text for ``external_id``."""

    @abstractmethod
    def extract_text(self, payload: dict) -> str:
        """Pull the proof-bearing text out of the metadata response."""


_YT_ID = r"(?P<id>[A-Za-z0-9_-]{11})"
_HOST = r"^https?://(?:www\.|m\.)?"


class YouTubeMatcher(PlatformMatcher):
    name = "youtube"
    patterns = (
        re.compile(_HOST + r"youtube\.com/watch\?(?:[^#]*&)?v=" + _YT_ID),
        re.compile(_HOST + r"youtu\.be/" + _YT_ID),
        re.compile(_HOST + r"youtube\.com/shorts/" + _YT_ID),
        re.compile(_HOST + r"youtube(?:-nocookie)?\.com/embed/" + _YT_ID),
        re.compile(_HOST + r"youtube\.com/live/" + _YT_ID),
    )

    def __init__(self, api_key: str = None):
        self.api_key = api_key if api_key is not None else Config.YOUTUBE_API_KEY

    def proof_request(self, external_id: str) -> ProofRequest:
        if not self.api_key:
            raise ValueError("YouTube proofs need YOUTUBE_API_KEY to read video descriptions")
        return ProofRequest(
            url="https://www.googleapis.com/youtube/v3/videos",
            params={"part": "snippet", "id": external_id, "key": self.api_key},
        )

    def extract_text(self, payload: dict) -> str:
        items = payload.get("items") or []
        if not items:
            return ""
        return items[0].get("snippet", {}).get("description", "") or ""


class VimeoMatcher(PlatformMatcher):
    name = "vimeo"
    patterns = (
        re.compile(_HOST + r"vimeo\.com/(?:channels/[\w-]+/)?(?P<id>\d+)"),
        re.compile(r"^https?://player\.vimeo\.com/video/(?P<id>\d+)"),
    )

    def proof_request(self, external_id: str) -> ProofRequest:
        return ProofRequest(
            url="https://vimeo.com/api/oembed.json",
            params={"url": f"https://vimeo.com/{external_id}"},
        )

    def extract_text(self, payload: dict) -> str:
        return payload.get("description", "") or ""


class GitHubMatcher(PlatformMatcher):
    """Gists become ``gist/<id>``; repositories stay ``<owner>/<repo>``."""

    name = "github"
    patterns = (
        re.compile(r"^https?://gist\.github\.com/(?:[\w-]+/)?(?P<gist>[0-9a-f]{20,})"),
        re.compile(_HOST + r"github\.com/(?P<repo>[\w.-]+/[\w.-]+?)(?:\.git)?/?(?:[?#].*)?$"),
    )

    def normalize_id(self, found: "re.Match") -> str:
        groups = found.groupdict()
        if groups.get("gist"):
            return f"gist/{groups['gist']}"
        return groups["repo"]

    def proof_request(self, external_id: str) -> ProofRequest:
        headers = {"Accept": "application/vnd.github+json"}
        if external_id.startswith("gist/"):
            return ProofRequest(url=f"https://api.github.com/gists/{external_id[5:]}", headers=headers)
        return ProofRequest(url=f"https://api.github.com/repos/{external_id}", headers=headers)

    def extract_text(self, payload: dict) -> str:
        return payload.get("description", "") or ""


_TAG = re.compile(r"<[^>]+>")


class XMatcher(PlatformMatcher):
    name = "x"
    patterns = (
        re.compile(_HOST + r"(?:twitter|x)\.com/(?:\w{1,15}|i/web)/status(?:es)?/(?P<id>\d+)"),
        re.compile(_HOST + r"(?:twitter|x)\.com/i/status/(?P<id>\d+)"),
    )

    def proof_request(self, external_id: str) -> ProofRequest:
        return ProofRequest(
            url="https://publish.twitter.com/oembed",
            params={"url": f"https://twitter.com/i/status/{external_id}", "omit_script": "true"},
        )

    def extract_text(self, payload: dict) -> str:
        return html.unescape(_TAG.sub(" ", payload.get("html", "") or ""))


class TikTokMatcher(PlatformMatcher):
    name = "tiktok"
    patterns = (
        re.compile(_HOST + r"tiktok\.com/@(?P<user>[\w.-]+)/video/(?P<id>\d+)"),
        re.compile(_HOST + r"tiktok\.com/embed(?:/v2)?/(?P<id>\d+)"),
    )

    def proof_request(self, external_id: str) -> ProofRequest:
        return ProofRequest(
            url="https://www.tiktok.com/oembed",
            params={"url": f"https://www.tiktok.com/video/{quote(external_id)}"},
        )

    def extract_text(self, payload: dict) -> str:
        return payload.get("title", "") or ""


class InstagramMatcher(PlatformMatcher):
    """Posts, reels and IGTV become ``p/<code>``, ``reel/<code>`` and ``tv/<code>``."""

    name = "instagram"
    patterns = (
        re.compile(_HOST + r"instagram\.com/(?:[\w.]+/)?(?P<kind>p|reels?|tv)/(?P<code>[\w-]+)"),
        re.compile(r"^https?://instagr\.am/(?P<kind>p)/(?P<code>[\w-]+)"),
    )

    def __init__(self, access_token: str = None):
        self.access_token = access_token if access_token is not None else Config.INSTAGRAM_ACCESS_TOKEN

    def normalize_id(self, found: "re.Match") -> str:
        kind = "reel" if found.group("kind") == "reels" else found.group("kind")
        return f"{kind}/{found.group('code')}"

    def proof_request(self, external_id: str) -> ProofRequest:
        if not self.access_token:
            raise ValueError("Instagram proofs need INSTAGRAM_ACCESS_TOKEN for the oEmbed endpoint")
        return ProofRequest(
            url="https://graph.facebook.com/v19.0/instagram_oembed",
            params={
                "url": f"https://www.instagram.com/{external_id}/",
                "access_token": self.access_token,
                "omitscript": "true",
            },
        )

    def extract_text(self, payload: dict) -> str:
        return payload.get("title", "") or ""


class LinkedInMatcher(PlatformMatcher):
    name = "linkedin"
    patterns = (
        re.compile(_HOST + r"linkedin\.com/(?P<id>(?:posts|in|company|feed/update)/[^/?#]+)"),
    )

    def proof_request(self, external_id: str) -> ProofRequest:
        # LinkedIn serves post text to signed-in members only
        raise ProofFetchError(f"linkedin offers no public metadata for {external_id}")

    def extract_text(self, payload: dict) -> str:
        return payload.get("commentary", "") or ""


class DiscordMatcher(PlatformMatcher):
    """Invite links carry the proof in the server description; channel links cannot be read anonymously."""

    name = "discord"
    patterns = (
        re.compile(r"^https?://(?:www\.)?discord\.gg/(?P<id>[\w-]+)"),
        re.compile(r"^https?://(?:www\.|ptb\.|canary\.)?discord(?:app)?\.com/(?P<id>invite/[\w-]+|channels/[\w-]+/[\w-]+)"),
    )

    def proof_request(self, external_id: str) -> ProofRequest:
        if external_id.startswith("channels/"):
            raise ProofFetchError("discord channel messages are not publicly readable; bind an invite link")
        code = external_id.rsplit("/", 1)[-1]
        return ProofRequest(url=f"https://discord.com/api/v10/invites/{quote(code)}")

    def extract_text(self, payload: dict) -> str:
        guild = payload.get("guild") or {}
        return guild.get("description", "") or ""


class PlatformRegistry:
    """Ordered set of platform matchers; the first matcher that recognizes a URL wins."""

    def __init__(self, matchers: Optional[List[PlatformMatcher]] = None):
        self._matchers: Dict[str, PlatformMatcher] = {}
        for matcher in matchers or []:
            self.register(matcher)

    def register(self, matcher: PlatformMatcher) -> None:
        if matcher.name in self._matchers:
            raise ValueError(f"Platform '{matcher.name}' is already registered")
        self._matchers[matcher.name] = matcher

    def get(self, name: str) -> PlatformMatcher:
        try:
            return self._matchers[name]
        except KeyError:
            raise ParseError(f"Unknown platform '{name}'")

    @property
    def names(self) -> List[str]:
        return list(self._matchers)

    def classify(self, url: str) -> Tuple[PlatformMatcher, str]:
        url = (url or "").strip()
        for matcher in self._matchers.values():
            external_id = matcher.match(url)
            if external_id:
                return matcher, external_id
        logger.info(f"No platform matcher recognized URL {url!r}")
        raise ParseError(f"Unrecognized platform URL: {url}")


def default_platforms(youtube_api_key: str = None, instagram_access_token: str = None) -> PlatformRegistry:
    return PlatformRegistry(
        [
            YouTubeMatcher(api_key=youtube_api_key),
            VimeoMatcher(),
            GitHubMatcher(),
            XMatcher(),
            TikTokMatcher(),
            InstagramMatcher(access_token=instagram_access_token),
            LinkedInMatcher(),
            DiscordMatcher(),
        ]
    )
