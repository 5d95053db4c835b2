#!/usr/bin/env python3
"""
Multi-Strategy Media Resolver

Locates and downloads a playable video from an arbitrary webpage whose
delivery mechanism is unknown in advance. Strategies are tried in a fixed,
configurable priority order and the first success wins:

  structured-data  schema.org VideoObject contentUrl (JSON-LD)
  tool-native      yt-dlp's own site support
  network-sniff    headless browser watching for an HLS manifest request

Metadata is written as pretty-printed JSON next to the downloaded file.

Usage:
    python media_resolver.py "https://example.com/watch/some-video"
"""

from __future__ import annotations

import argparse
import glob
import json
import logging
import math
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

logger = logging.getLogger("media_resolver")

# ============================================================================
# CONFIGURATION
# ============================================================================

STRUCTURED_DATA = "structured-data"
TOOL_NATIVE = "tool-native"
NETWORK_SNIFF = "network-sniff"


class Config:
    """Global configuration."""
    OUTPUT_DIR = Path("output")
    LOG_FILE = "resolver.log"
    MAX_RETRIES = 3
    TIMEOUT = 30
    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    )

    # Strategy priority, first success wins
    STRATEGY_ORDER = (STRUCTURED_DATA, TOOL_NATIVE, NETWORK_SNIFF)
    STATIC_PREFETCH = True

    # Browser timings (milliseconds)
    NAVIGATION_TIMEOUT_MS = 30000
    CONSENT_TIMEOUT_MS = 3000
    CLICK_TIMEOUT_MS = 3000
    SNIFF_WINDOW_MS = 15000
    POLL_INTERVAL_MS = 500

    # External tools (seconds)
    TOOL_TIMEOUT = 1800
    PROBE_TIMEOUT = 15

    MANIFEST_PATTERN = ".m3u8"
    DIRECT_EXTENSIONS = ("mp4", "m4v", "webm", "mov", "mkv")
    MAX_FILENAME_LENGTH = 150
    DEFAULT_EXTENSION = "mp4"
    STRUCTURED_FALLBACK_NAME = "direct_video"
    TOOL_FALLBACK_NAME = "video"
    SNIFF_FALLBACK_NAME = "sniffed_fallback"
    SNIFF_DEFAULT_TITLE = "Sniffed Stream"

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def setup_logging(log_file: str = Config.LOG_FILE) -> logging.Logger:
    """Configure logging with file and console handlers."""
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    fh = logging.FileHandler(log_file)
    fh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    fh.setFormatter(formatter)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger

# ============================================================================
# ERRORS
# ============================================================================

class ResolverError(Exception):
    """Base class for extraction failures."""


class NotFoundError(ResolverError):
    """A strategy could not discover a content locator by its own method."""


class UnsupportedSiteError(ResolverError):
    """yt-dlp has no extractor for the page's site."""


class NoStreamFoundError(ResolverError):
    """The sniffing window elapsed without a manifest request."""


class TransportError(ResolverError):
    """Navigation, fetch or network failure."""


class ProbeFailure(ResolverError):
    """Duration could not be read from a downloaded file."""

# ============================================================================
# DATA MODELS
# ============================================================================

# (attribute, persisted key)
_DOCUMENT_KEYS = (
    ("title", "title"),
    ("source_url", "sourceUrl"),
    ("content_locator", "contentLocator"),
    ("duration_seconds", "durationSeconds"),
    ("uploader", "uploader"),
    ("upload_date", "uploadDate"),
    ("view_count", "viewCount"),
    ("categories", "categories"),
    ("tags", "tags"),
    ("format", "format"),
    ("extension", "extension"),
    ("discovery_method", "discoveryMethod"),
    ("captured_at", "capturedAt"),
)


@dataclass
class MediaRecord:
    """Canonical metadata for a resolved video. None means unknown."""
    source_url: str
    content_locator: str
    discovery_method: str  # structured-data, tool-native, network-sniff
    title: Optional[str] = None
    duration_seconds: Optional[int] = None
    uploader: Optional[str] = None
    upload_date: Optional[str] = None
    view_count: Optional[int] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    format: Optional[str] = None
    extension: Optional[str] = None
    captured_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    metadata_path: Optional[Path] = field(default=None, repr=False)
    media_path: Optional[Path] = field(default=None, repr=False)

    def to_document(self) -> Dict[str, Any]:
        """Raw source payload overlaid with the canonical fields.

        Unknown canonical fields are dropped rather than written as null.
        """
        doc = dict(self.raw)
        for attr, key in _DOCUMENT_KEYS:
            value = getattr(self, attr)
            if value is None:
                doc.pop(key, None)
            else:
                doc[key] = value
        return doc


@dataclass
class ExtractionAttempt:
    """Outcome of one strategy, kept for end-of-run reporting."""
    strategy_name: str
    outcome: str  # success, failure
    error_message: Optional[str] = None


@dataclass
class ResolveOutcome:
    success: bool
    record: Optional[MediaRecord] = None
    attempts: List[ExtractionAttempt] = field(default_factory=list)

    @property
    def failures(self) -> List[ExtractionAttempt]:
        return [a for a in self.attempts if a.outcome == "failure"]

# ============================================================================
# FILENAME & METADATA UTILITIES
# ============================================================================

_RESERVED_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def sanitize(name: str, max_length: int = Config.MAX_FILENAME_LENGTH) -> str:
    """Make a title safe to use as a filename."""
    return _RESERVED_CHARS.sub("_", name)[:max_length].strip()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


_ISO_DURATION = re.compile(
    r'^P(?:(?P<days>\d+(?:\.\d+)?)D)?'
    r'(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?'
    r'(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$',
    re.IGNORECASE,
)


def parse_duration(value: Any) -> Optional[int]:
    """
    Convert a duration to whole seconds.

    Accepts numbers, numeric strings and ISO 8601 durations (``PT1M30S``)
    as found in JSON-LD. Returns None when the value is missing or unusable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        match = _ISO_DURATION.match(text)
        if match and text.upper() not in ("P", "PT"):
            parts = {k: float(v) for k, v in match.groupdict().items() if v}
            seconds = (
                parts.get("days", 0) * 86400
                + parts.get("hours", 0) * 3600
                + parts.get("minutes", 0) * 60
                + parts.get("seconds", 0)
            )
        else:
            try:
                seconds = float(text)
            except ValueError:
                return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return round_half_up(seconds)


class MetadataStore:
    """Save and reload metadata documents in the output directory."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def path_for(self, name: str) -> Path:
        return self.output_dir / f"{name}.json"

    def save(self, record: MediaRecord, name: str) -> Path:
        """Write (or rewrite in place) the record under ``name``."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        metadata_file = self.path_for(name)

        with open(metadata_file, 'w', encoding='utf-8') as f:
            json.dump(record.to_document(), f, indent=2, ensure_ascii=False)

        logger.info(f"Saved metadata to {metadata_file}")
        return metadata_file

    def load(self, name: str) -> Dict[str, Any]:
        with open(self.path_for(name), 'r', encoding='utf-8') as f:
            return json.load(f)


def find_downloaded_file(output_dir: Path, stem: str, extension: str) -> Optional[Path]:
    """Locate the file yt-dlp produced for ``<stem>.%(ext)s``."""
    expected = output_dir / f"{stem}.{extension}"
    if expected.exists():
        return expected

    candidates = [
        p for p in output_dir.glob(f"{glob.escape(stem)}.*")
        if p.suffix.lower() not in ('.json', '.part', '.ytdl')
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)

# ============================================================================
# DURATION PROBE
# ============================================================================

class DurationProbe:
    """Read a media file's duration with ffprobe."""

    def __init__(self, timeout: int = Config.PROBE_TIMEOUT,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.timeout = timeout
        self.runner = runner

    def probe(self, file_path: Path) -> int:
        """
        Return the duration of ``file_path`` rounded to whole seconds.

        Raises:
            ProbeFailure: ffprobe is missing, fails, or reports no usable duration.
        """
        command = [
            "ffprobe", "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json",
            str(file_path),
        ]

        try:
            completed = self.runner(
                command,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ProbeFailure("ffprobe is not installed or not available in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeFailure(f"ffprobe timed out while probing {file_path}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise ProbeFailure(f"ffprobe failed for {file_path}: {stderr or e}") from e

        try:
            payload = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeFailure(f"ffprobe returned invalid JSON for {file_path}") from e

        value = (payload.get("format") or {}).get("duration")
        try:
            seconds = float(value)
        except (TypeError, ValueError) as e:
            raise ProbeFailure(f"ffprobe returned no usable duration for {file_path}") from e

        if not math.isfinite(seconds) or seconds <= 0:
            raise ProbeFailure(f"ffprobe returned no usable duration for {file_path}")
        return round_half_up(seconds)


def backfill_duration(record: MediaRecord, media_path: Optional[Path],
                      probe: DurationProbe) -> bool:
    """Fill in a missing duration from the downloaded file. Never raises."""
    if record.duration_seconds is not None:
        return False
    if media_path is None or not Path(media_path).exists():
        logger.warning("Downloaded file not found, duration stays unknown")
        return False

    try:
        seconds = probe.probe(media_path)
    except ProbeFailure as e:
        logger.warning(f"Failed to extract duration via ffprobe: {e}")
        return False

    record.duration_seconds = seconds
    if record.raw:
        record.raw["duration"] = seconds
    logger.info(f"Probed duration: {seconds}s")
    return True

# ============================================================================
# EXTRACTOR TOOL (yt-dlp)
# ============================================================================

@dataclass
class TransportHeaders:
    """Per-request overrides passed through to yt-dlp."""
    referer: Optional[str] = None
    user_agent: Optional[str] = None
    cookie: Optional[str] = None

    def to_args(self) -> List[str]:
        args: List[str] = []
        if self.referer:
            args += ["--referer", self.referer]
        if self.user_agent:
            args += ["--user-agent", self.user_agent]
        if self.cookie:
            args += ["--add-header", f"Cookie: {self.cookie}"]
        return args


def cookie_header(cookies: Sequence[Tuple[str, str]]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies)


def find_yt_dlp_command() -> List[str]:
    """Prefer a yt-dlp executable on PATH, else run the installed module."""
    executable = shutil.which("yt-dlp")
    if executable:
        return [executable]
    return [sys.executable, "-m", "yt_dlp"]


class YtDlpTool:
    """Run yt-dlp as an external process in dump or download mode."""

    def __init__(self, command: Optional[Sequence[str]] = None,
                 timeout: int = Config.TOOL_TIMEOUT,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.command = list(command) if command else find_yt_dlp_command()
        self.timeout = timeout
        self.runner = runner

    def dump_metadata(self, locator: str, headers: Optional[TransportHeaders] = None,
                      no_playlist: bool = False) -> str:
        """Return the first JSON document yt-dlp prints for ``locator``."""
        args = ["--dump-json", locator]
        if no_playlist:
            args.append("--no-playlist")
        if headers:
            args += headers.to_args()

        stdout = self._run(args)
        for line in stdout.splitlines():
            if line.strip():
                return line.strip()
        raise TransportError(f"yt-dlp returned no metadata for {locator}")

    def fetch(self, locator: str, output_template: Path,
              headers: Optional[TransportHeaders] = None,
              no_playlist: bool = False) -> None:
        """Download ``locator`` to ``output_template`` (may contain ``%(ext)s``)."""
        args = [locator, "-o", str(output_template)]
        if no_playlist:
            args.append("--no-playlist")
        if headers:
            args += headers.to_args()
        self._run(args)

    def _run(self, args: List[str]) -> str:
        cmd = self.command + args
        logger.debug(f"yt-dlp command: {' '.join(cmd)}")

        try:
            completed = self.runner(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise TransportError("yt-dlp is not installed or not available in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"yt-dlp timed out after {self.timeout}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            reason = stderr.splitlines()[-1] if stderr else f"exit status {e.returncode}"
            if "Unsupported URL" in stderr:
                raise UnsupportedSiteError(f"yt-dlp does not support this site: {reason}") from e
            raise TransportError(f"yt-dlp failed: {reason}") from e

        if completed.stderr:
            logger.debug(f"yt-dlp stderr:\n{completed.stderr}")
        return completed.stdout or ""


def parse_tool_json(payload: str, locator: str) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise TransportError(f"yt-dlp returned invalid JSON for {locator}") from e
    if not isinstance(data, dict):
        raise TransportError(f"yt-dlp returned unexpected metadata for {locator}")
    return data

# ============================================================================
# BROWSER SESSION
# ============================================================================

class StreamLatch:
    """Single-assignment slot: the first offered URL wins, later ones are ignored."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Optional[str] = None

    @property
    def value(self) -> Optional[str]:
        return self._value

    @property
    def is_set(self) -> bool:
        return self._value is not None

    def offer(self, url: str) -> bool:
        with self._lock:
            if self._value is not None:
                return False
            self._value = url
            return True

    def wait(self, timeout_ms: int, interval_ms: int,
             sleep: Callable[[float], Any],
             clock: Callable[[], float] = time.monotonic) -> Optional[str]:
        """
        Poll every ``interval_ms`` until a value arrives or ``timeout_ms`` elapses.

        ``sleep`` takes milliseconds. Always returns by the deadline.
        """
        deadline = clock() + timeout_ms / 1000
        while not self.is_set:
            remaining_ms = (deadline - clock()) * 1000
            if remaining_ms <= 0:
                break
            sleep(min(interval_ms, remaining_ms))
        return self._value


class BrowserSession:
    """
    Headless Chromium page driven through Playwright's sync API.

    Use as a context manager so the browser is closed on every exit path.
    """

    def __init__(self, user_agent: str = Config.USER_AGENT, headless: bool = True):
        self.user_agent = user_agent
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._context = None
        self.page = None

    def __enter__(self) -> "BrowserSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> "BrowserSession":
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(
                headless=self.headless, args=["--no-sandbox"]
            )
            self._context = self._browser.new_context(user_agent=self.user_agent)
            self.page = self._context.new_page()
        except PlaywrightError as e:
            self.close()
            raise TransportError(f"Failed to launch browser: {e}") from e
        return self

    def goto(self, url: str, timeout_ms: int) -> None:
        logger.info(f"Navigating to {url}")
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightError as e:
            raise TransportError(f"Navigation to {url} failed: {e}") from e

    def evaluate(self, query: str) -> Any:
        try:
            return self.page.evaluate(query)
        except PlaywrightError as e:
            raise TransportError(f"Page evaluation failed: {e}") from e

    def on_request(self, predicate: Callable[[str], bool]) -> StreamLatch:
        """Observe outgoing requests; the first URL matching ``predicate`` is latched."""
        latch = StreamLatch()

        def handle(request):
            url = request.url
            if predicate(url) and latch.offer(url):
                logger.info(f"Detected stream request: {url}")

        self.page.on("request", handle)
        return latch

    def try_click(self, selectors: Sequence[str], timeout_ms: int,
                  frame_selector: Optional[str] = None) -> bool:
        """Click the first selector that responds. Failures are swallowed."""
        scope = self.page.frame_locator(frame_selector) if frame_selector else self.page
        for selector in selectors:
            try:
                scope.locator(selector).first.click(timeout=timeout_ms)
                logger.debug(f"Clicked {selector!r}")
                return True
            except PlaywrightError as e:
                logger.debug(f"Click on {selector!r} failed: {e}")
        return False

    def wait(self, ms: float) -> None:
        self.page.wait_for_timeout(ms)

    def cookies(self) -> List[Tuple[str, str]]:
        return [(c["name"], c["value"]) for c in self._context.cookies()]

    def close(self) -> None:
        for resource in (self._context, self._browser):
            if resource is not None:
                try:
                    resource.close()
                except PlaywrightError as e:
                    logger.debug(f"Error while closing browser: {e}")
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as e:
                logger.debug(f"Error while stopping Playwright: {e}")
        self._playwright = self._browser = self._context = self.page = None

# ============================================================================
# INTERACTION PROFILES
# ============================================================================

@dataclass(frozen=True)
class InteractionProfile:
    """Selectors used to coax a page into requesting its stream."""
    consent_selectors: Tuple[str, ...] = ('[id*="onetrust-accept"]',)
    # Tried in order, body is the last resort
    play_selectors: Tuple[str, ...] = ('.fs-video-player', '#overlayPlay', 'body')
    frame_selector: Optional[str] = None


DEFAULT_PROFILE = InteractionProfile()
SITE_PROFILES: Dict[str, InteractionProfile] = {}


def register_site_profile(host_suffix: str, profile: InteractionProfile) -> None:
    SITE_PROFILES[host_suffix.lower()] = profile


def profile_for(url: str) -> InteractionProfile:
    host = (urlparse(url).hostname or "").lower()
    for suffix, profile in SITE_PROFILES.items():
        if host == suffix or host.endswith("." + suffix):
            return profile
    return DEFAULT_PROFILE


def simulate_interaction(session: BrowserSession,
                         profile: InteractionProfile) -> List[Tuple[str, bool]]:
    """Run each interaction step independently; no step can abort the sequence."""
    steps = [
        ("dismiss-consent", lambda: session.try_click(
            profile.consent_selectors, Config.CONSENT_TIMEOUT_MS)),
        ("trigger-playback", lambda: session.try_click(
            profile.play_selectors, Config.CLICK_TIMEOUT_MS,
            frame_selector=profile.frame_selector)),
    ]

    results = []
    for name, action in steps:
        try:
            ok = bool(action())
        except Exception as e:
            logger.warning(f"Interaction step {name} raised: {e}")
            ok = False
        logger.info(f"Interaction step {name}: {'done' if ok else 'no effect'}")
        results.append((name, ok))
    return results


def is_manifest_request(url: str) -> bool:
    return Config.MANIFEST_PATTERN in url

# ============================================================================
# JSON-LD PARSING
# ============================================================================

LD_JSON_QUERY = """() => Array.from(
    document.querySelectorAll('script[type="application/ld+json"]')
).map(s => s.textContent)"""


class PageFetcher:
    """Fetch raw page HTML with retry logic."""

    def __init__(self):
        self.session = requests.Session()
        self.session.headers.update({'User-Agent': Config.USER_AGENT})

    def fetch_page(self, url: str) -> Optional[str]:
        """Return the page HTML, or None on failure."""
        logger.info(f"Fetching webpage: {url}")

        for attempt in range(Config.MAX_RETRIES):
            try:
                response = self.session.get(url, timeout=Config.TIMEOUT, allow_redirects=True)
                response.raise_for_status()
                response.encoding = response.apparent_encoding or 'utf-8'
                return response.text
            except requests.RequestException as e:
                logger.warning(f"Attempt {attempt + 1}/{Config.MAX_RETRIES} failed: {e}")
                if attempt < Config.MAX_RETRIES - 1:
                    time.sleep(2 ** attempt)

        logger.error(f"Failed to fetch {url} after {Config.MAX_RETRIES} attempts")
        return None


def extract_ld_json_blocks(html: str) -> List[str]:
    soup = BeautifulSoup(html, 'html.parser')
    return [s.get_text() for s in soup.find_all('script', type='application/ld+json')]


def _iter_ld_json_nodes(data: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_ld_json_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_ld_json_nodes(data["@graph"])


def _is_video_object(node: Dict[str, Any]) -> bool:
    kind = node.get("@type")
    if isinstance(kind, list):
        return "VideoObject" in kind
    return kind == "VideoObject"


def find_video_descriptor(blocks: Sequence[str]) -> Optional[Dict[str, Any]]:
    """First VideoObject carrying a contentUrl, in document order."""
    for block in blocks:
        try:
            data = json.loads(block)
        except (TypeError, json.JSONDecodeError):
            continue
        for node in _iter_ld_json_nodes(data):
            content_url = node.get("contentUrl")
            if _is_video_object(node) and isinstance(content_url, str) and content_url.strip():
                return node
    return None


def _as_list(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",")]
    elif isinstance(value, list):
        items = [str(v).strip() for v in value]
    else:
        return None
    return [v for v in items if v] or None


def _ld_json_view_count(stats: Any) -> Optional[int]:
    for stat in stats if isinstance(stats, list) else [stats]:
        if not isinstance(stat, dict):
            continue
        action = stat.get("interactionType")
        if isinstance(action, dict):
            action = action.get("@type")
        if action and "WatchAction" in str(action):
            try:
                return int(stat.get("userInteractionCount"))
            except (TypeError, ValueError):
                return None
    return None


def _ld_json_text(value: Any) -> Optional[str]:
    """First usable string of a schema.org text property (plain, list or value object)."""
    if isinstance(value, list):
        for item in value:
            text = _ld_json_text(item)
            if text:
                return text
        return None
    if isinstance(value, dict):
        value = value.get("@value")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def record_from_ld_json(descriptor: Dict[str, Any], page_url: str) -> MediaRecord:
    """Map a schema.org VideoObject onto a MediaRecord."""
    # contentUrl may be page-relative
    content_url = urljoin(page_url, descriptor["contentUrl"].strip())
    author = descriptor.get("author")
    if isinstance(author, list):
        author = author[0] if author else None
    if isinstance(author, dict):
        author = author.get("name")

    # The file is written under this extension, so only known containers are kept
    suffix = Path(urlparse(content_url).path).suffix.lstrip(".").lower()
    if suffix not in Config.DIRECT_EXTENSIONS:
        suffix = Config.DEFAULT_EXTENSION
    genre = descriptor.get("genre")

    return MediaRecord(
        title=_ld_json_text(descriptor.get("name")),
        source_url=page_url,
        content_locator=content_url,
        discovery_method=STRUCTURED_DATA,
        duration_seconds=parse_duration(descriptor.get("duration")),
        uploader=author if isinstance(author, str) else None,
        upload_date=descriptor.get("uploadDate"),
        view_count=_ld_json_view_count(descriptor.get("interactionStatistic")),
        categories=[genre] if isinstance(genre, str) else _as_list(genre),
        tags=_as_list(descriptor.get("keywords")),
        format=descriptor.get("encodingFormat"),
        extension=suffix,
        raw=dict(descriptor),
    )


def record_from_tool_metadata(meta: Dict[str, Any], page_url: str, locator: str,
                              method: str, keep_raw: bool = True) -> MediaRecord:
    """Map a yt-dlp info dict onto a MediaRecord."""
    view_count = meta.get("view_count")
    return MediaRecord(
        title=meta.get("title") or None,
        source_url=page_url,
        content_locator=locator,
        discovery_method=method,
        duration_seconds=parse_duration(meta.get("duration")),
        uploader=meta.get("uploader") or meta.get("channel"),
        upload_date=meta.get("upload_date"),
        view_count=view_count if isinstance(view_count, int) else None,
        categories=meta.get("categories") or None,
        tags=meta.get("tags") or None,
        format=meta.get("format"),
        extension=meta.get("ext"),
        raw=dict(meta) if keep_raw else {},
    )

# ============================================================================
# EXTRACTION STRATEGIES
# ============================================================================

class ExtractionStrategy:
    """One self-contained way of resolving a page URL into a downloaded video."""

    name = ""

    def __init__(self, output_dir: Optional[Path] = None,
                 tool: Optional[YtDlpTool] = None,
                 store: Optional[MetadataStore] = None,
                 probe: Optional[DurationProbe] = None,
                 browser_factory: Callable[[], BrowserSession] = BrowserSession):
        self.output_dir = Path(output_dir or Config.OUTPUT_DIR)
        self.tool = tool or YtDlpTool()
        self.store = store or MetadataStore(self.output_dir)
        self.probe = probe or DurationProbe()
        self.browser_factory = browser_factory

    def run(self, url: str) -> MediaRecord:
        raise NotImplementedError


class StructuredDataStrategy(ExtractionStrategy):
    """Download the contentUrl of an embedded schema.org VideoObject."""

    name = STRUCTURED_DATA

    def __init__(self, *args, fetcher: Optional[PageFetcher] = None, **kwargs):
        super().__init__(*args, **kwargs)
        if fetcher is None and Config.STATIC_PREFETCH:
            fetcher = PageFetcher()
        self.fetcher = fetcher

    def run(self, url: str) -> MediaRecord:
        logger.info("Trying JSON-LD contentUrl extraction...")
        descriptor = self._find_in_static_html(url)
        if descriptor is None:
            descriptor = self._find_in_rendered_page(url)
        if descriptor is None:
            raise NotFoundError("No contentUrl found in JSON-LD")

        record = record_from_ld_json(descriptor, url)
        safe_title = sanitize(record.title or "") or Config.STRUCTURED_FALLBACK_NAME
        metadata_name = f"{safe_title}_ldjson"
        media_path = self.output_dir / f"{safe_title}.{record.extension}"

        # Persist before downloading so the metadata survives a failed fetch
        record.metadata_path = self.store.save(record, metadata_name)

        logger.info(f"Downloading from JSON-LD: {record.content_locator}")
        self.tool.fetch(
            record.content_locator,
            media_path,
            headers=TransportHeaders(referer=url, user_agent=Config.USER_AGENT),
        )
        record.media_path = media_path

        if backfill_duration(record, media_path, self.probe):
            self.store.save(record, metadata_name)

        logger.info("JSON-LD video downloaded")
        return record

    def _find_in_static_html(self, url: str) -> Optional[Dict[str, Any]]:
        if self.fetcher is None:
            return None
        html = self.fetcher.fetch_page(url)
        if not html:
            return None
        descriptor = find_video_descriptor(extract_ld_json_blocks(html))
        if descriptor is not None:
            logger.info("Found VideoObject in static HTML")
        return descriptor

    def _find_in_rendered_page(self, url: str) -> Optional[Dict[str, Any]]:
        with self.browser_factory() as session:
            session.goto(url, Config.NAVIGATION_TIMEOUT_MS)
            blocks = session.evaluate(LD_JSON_QUERY) or []
        return find_video_descriptor(blocks)


class ToolNativeStrategy(ExtractionStrategy):
    """Let yt-dlp resolve the page with its own site support."""

    name = TOOL_NATIVE

    def run(self, url: str) -> MediaRecord:
        logger.info("Trying yt-dlp...")
        meta = parse_tool_json(self.tool.dump_metadata(url, no_playlist=True), url)
        record = record_from_tool_metadata(meta, url, meta.get("url") or url, TOOL_NATIVE)

        safe_title = (sanitize(record.title or "") or sanitize(str(meta.get("id") or ""))
                      or Config.TOOL_FALLBACK_NAME)
        record.metadata_path = self.store.save(record, safe_title)

        self.tool.fetch(url, self.output_dir / f"{safe_title}.%(ext)s", no_playlist=True)
        record.media_path = find_downloaded_file(
            self.output_dir, safe_title, record.extension or Config.DEFAULT_EXTENSION
        )

        if backfill_duration(record, record.media_path, self.probe):
            self.store.save(record, safe_title)

        logger.info("yt-dlp succeeded")
        return record


class NetworkSniffStrategy(ExtractionStrategy):
    """
    Watch the browser's network traffic for an HLS manifest.

    The request observer is installed before navigation, then the page is
    nudged into playback (consent dialog, play button) and polled for a
    bounded window. A discovered manifest is handed to yt-dlp together with
    the page's cookies, referer and user agent.
    """

    name = NETWORK_SNIFF

    def __init__(self, *args, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock

    def run(self, url: str) -> MediaRecord:
        logger.info(f"Launching browser to sniff {Config.MANIFEST_PATTERN} stream...")
        profile = profile_for(url)

        with self.browser_factory() as session:
            latch = session.on_request(is_manifest_request)
            try:
                session.goto(url, Config.NAVIGATION_TIMEOUT_MS)
            except TransportError as e:
                # Requests issued before the timeout are still captured
                logger.warning(f"{e}; continuing to sniff")

            simulate_interaction(session, profile)
            stream_url = latch.wait(
                Config.SNIFF_WINDOW_MS, Config.POLL_INTERVAL_MS,
                sleep=session.wait, clock=self.clock,
            )
            if stream_url is None:
                raise NoStreamFoundError(
                    f"No {Config.MANIFEST_PATTERN} stream found within "
                    f"{Config.SNIFF_WINDOW_MS} ms"
                )
            cookies = session.cookies()

        headers = TransportHeaders(
            referer=url,
            user_agent=Config.USER_AGENT,
            cookie=cookie_header(cookies) or None,
        )
        record = self._enrich(url, stream_url, headers)
        safe_title = (sanitize(record.title) if record.title else "") or Config.SNIFF_FALLBACK_NAME

        try:
            self.tool.fetch(
                stream_url,
                self.output_dir / f"{safe_title}.%(ext)s",
                headers=headers,
                no_playlist=True,
            )
        except ResolverError as e:
            raise TransportError(f"Found stream {stream_url} but download failed: {e}") from e

        record.media_path = find_downloaded_file(
            self.output_dir, safe_title, record.extension or Config.DEFAULT_EXTENSION
        )
        backfill_duration(record, record.media_path, self.probe)
        record.metadata_path = self.store.save(record, safe_title)

        logger.info("Sniffed stream downloaded and metadata saved")
        return record

    def _enrich(self, page_url: str, stream_url: str,
                headers: TransportHeaders) -> MediaRecord:
        captured_at = datetime.now(timezone.utc).isoformat()
        try:
            meta = parse_tool_json(
                self.tool.dump_metadata(stream_url, headers=headers, no_playlist=True),
                stream_url,
            )
        except ResolverError as e:
            logger.warning(f"Failed to extract rich metadata from stream, using fallback only: {e}")
            return MediaRecord(
                source_url=page_url,
                content_locator=stream_url,
                discovery_method=NETWORK_SNIFF,
                captured_at=captured_at,
            )

        record = record_from_tool_metadata(meta, page_url, stream_url, NETWORK_SNIFF,
                                           keep_raw=False)
        record.title = record.title or Config.SNIFF_DEFAULT_TITLE
        record.captured_at = captured_at
        return record


STRATEGIES = {
    STRUCTURED_DATA: StructuredDataStrategy,
    TOOL_NATIVE: ToolNativeStrategy,
    NETWORK_SNIFF: NetworkSniffStrategy,
}


def parse_order(text: str) -> List[str]:
    """Parse a comma-separated strategy order, rejecting unknown or repeated names."""
    order = [name.strip() for name in text.split(",") if name.strip()]
    if not order:
        raise ValueError("strategy order is empty")
    for name in order:
        if name not in STRATEGIES:
            raise ValueError(f"unknown strategy '{name}' (choose from {', '.join(STRATEGIES)})")
    if len(set(order)) != len(order):
        raise ValueError("strategy order lists a strategy more than once")
    return order


def build_strategies(order: Optional[Sequence[str]] = None,
                     output_dir: Optional[Path] = None) -> List[ExtractionStrategy]:
    """Instantiate strategies in priority order, sharing one tool, store and probe."""
    order = parse_order(",".join(order or Config.STRATEGY_ORDER))
    output_dir = Path(output_dir or Config.OUTPUT_DIR)
    output_dir.mkdir(parents=True, exist_ok=True)

    tool = YtDlpTool()
    store = MetadataStore(output_dir)
    probe = DurationProbe()
    return [
        STRATEGIES[name](output_dir=output_dir, tool=tool, store=store, probe=probe)
        for name in order
    ]

# ============================================================================
# MAIN ORCHESTRATOR
# ============================================================================

class MediaResolver:
    """Run strategies in priority order until one succeeds."""

    def __init__(self, strategies: Sequence[ExtractionStrategy]):
        self.strategies = list(strategies)

    def resolve(self, url: str) -> ResolveOutcome:
        attempts: List[ExtractionAttempt] = []

        for strategy in self.strategies:
            logger.info(f"Trying strategy {strategy.name} for {url}")
            try:
                record = strategy.run(url)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.warning(f"{strategy.name} failed: {message}")
                attempts.append(ExtractionAttempt(strategy.name, "failure", message))
                continue

            attempts.append(ExtractionAttempt(strategy.name, "success"))
            logger.info(f"{strategy.name} succeeded")
            return ResolveOutcome(success=True, record=record, attempts=attempts)

        logger.error("All extraction methods failed.")
        return ResolveOutcome(success=False, attempts=attempts)

# ============================================================================
# ENTRY POINT
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Locate and download the video embedded in a webpage."
    )
    parser.add_argument("url", help="Page URL containing the video")
    parser.add_argument("--output-dir", default=str(Config.OUTPUT_DIR),
                        help="Directory for the media and metadata files")
    parser.add_argument("--order", default=",".join(Config.STRATEGY_ORDER),
                        help="Comma-separated strategy priority order")
    args = parser.parse_args(argv)

    try:
        order = parse_order(args.order)
    except ValueError as e:
        parser.error(str(e))

    setup_logging()
    resolver = MediaResolver(build_strategies(order, Path(args.output_dir)))
    outcome = resolver.resolve(args.url)

    if outcome.success:
        record = outcome.record
        logger.info(f"Resolved via {record.discovery_method}")
        logger.info(f"  Metadata: {record.metadata_path}")
        logger.info(f"  Media:    {record.media_path}")
        return 0

    logger.error("Could not resolve a video from this page:")
    for attempt in outcome.failures:
        logger.error(f"  {attempt.strategy_name}: {attempt.error_message}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
