#!/usr/bin/env python3
"""
Institution Video Crawler

Mirrors the homepage of every institution listed in a CSV directory, pulls the
embedded <video> and <iframe> elements out of each mirrored page, and downloads
the media those elements point at: direct video files, or Vimeo embeds resolved
through the Vimeo player config endpoint.

Every stage only adds what is missing from the output tree, so an interrupted
run can simply be started again.
"""

import csv
import ipaddress
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from requests.utils import requote_uri
from dotenv import load_dotenv

# ============================================================================
# CONFIGURATION
# ============================================================================

# .env beside the script wins, otherwise whatever is in the working directory
_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_timeout(name: str) -> Optional[float]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logging.getLogger("video_crawler").warning(
            f"Ignoring {name}={value!r}: not a number of seconds, using the requests default"
        )
        return None


class Config:
    """Global configuration."""
    INPUT_CSV = Path(os.getenv("CRAWLER_INPUT_CSV", "resource/institutions.csv"))
    ADDRESS_TABLE = Path(os.getenv("CRAWLER_ADDRESS_TABLE", "resource/crawler.csv"))
    OUTPUT_DIR = Path(os.getenv("CRAWLER_OUTPUT_DIR", "output"))
    LOG_FILE = os.getenv("CRAWLER_LOG_FILE", "crawler.log")
    LOG_LEVEL = os.getenv("CRAWLER_LOG_LEVEL", "INFO")
    HALT_ON_ERROR = _env_flag("CRAWLER_HALT_ON_ERROR")
    # None leaves requests at its own default
    TIMEOUT = _env_timeout("CRAWLER_TIMEOUT")
    CHUNK_SIZE = 8192

    ADDRESS_COLUMN = "WEBADDR"
    NAME_COLUMN = "INSTNM"

    PAGE_FILENAME = "index.html"
    FRAGMENT_TEMPLATE = "video_{index}.html"
    FRAGMENT_PATTERN = re.compile(r"^video_(\d+)\.html$")
    MEDIA_TAGS = ("video", "iframe")
    PARTIAL_SUFFIX = ".part"

    VIMEO_HOST = "vimeo.com"
    VIMEO_CONFIG_URL = "https://player.vimeo.com/video/{video_id}/config"
    VIMEO_FILENAME = "vimeo_{video_id}.mp4"

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

logger = logging.getLogger("video_crawler")


def setup_logging(log_file: str = Config.LOG_FILE, level: str = Config.LOG_LEVEL) -> logging.Logger:
    """Configure logging with file and console handlers."""
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))

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

class FailureKind(Enum):
    """Why a single row, page or fragment could not be processed."""
    MALFORMED_ADDRESS = "malformed_address"
    FETCH = "fetch"
    PARSE = "parse"
    JSON_SHAPE = "json_shape"
    STORAGE = "storage"


class CrawlerError(Exception):
    """Base class for crawler errors."""
    kind: Optional[FailureKind] = None


class InputError(CrawlerError):
    """The input table or output root is unusable; the run cannot continue."""


class NormalizationError(CrawlerError):
    kind = FailureKind.MALFORMED_ADDRESS

    def __init__(self, raw: str):
        super().__init__(f"Cannot parse a URL from {raw!r}")
        self.raw = raw


class FetchError(CrawlerError):
    kind = FailureKind.FETCH

    def __init__(self, url: str, cause: Exception):
        super().__init__(f"GET {url} failed: {cause}")
        self.url = url
        self.cause = cause


class ResolutionError(CrawlerError):
    def __init__(self, message: str, kind: FailureKind = FailureKind.PARSE):
        super().__init__(message)
        self.kind = kind


class StorageError(CrawlerError):
    kind = FailureKind.STORAGE


class PipelineHalted(CrawlerError):
    """Raised by the pipeline on the first failure when halt_on_error is set."""

    def __init__(self, result: "StageResult"):
        super().__init__(f"Halting at {result.stage} of {result.key}: {result.detail}")
        self.result = result

# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass(frozen=True)
class InstitutionRecord:
    """One row of the institution directory. `row` is the 1-based data row."""
    row: int
    raw_address: str
    display_name: str


class Outcome(Enum):
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


@dataclass
class StageResult:
    """What happened to one item in one stage."""
    stage: str
    key: str
    outcome: Outcome
    detail: str = ""
    failure: Optional[FailureKind] = None

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    @classmethod
    def from_error(cls, stage: str, key: str, error: CrawlerError) -> "StageResult":
        return cls(stage, key, Outcome.FAILED, detail=str(error), failure=error.kind)


@dataclass
class PipelineReport:
    """Per-stage results of one pipeline run."""
    addresses: List[StageResult] = field(default_factory=list)
    pages: List[StageResult] = field(default_factory=list)
    fragments: List[StageResult] = field(default_factory=list)
    downloads: List[StageResult] = field(default_factory=list)

    def stages(self) -> Dict[str, List[StageResult]]:
        return {
            "addresses": self.addresses,
            "pages": self.pages,
            "fragments": self.fragments,
            "downloads": self.downloads,
        }

    def counts(self) -> Dict[str, Dict[str, int]]:
        summary = {}
        for name, results in self.stages().items():
            tally = {outcome.value: 0 for outcome in Outcome}
            for result in results:
                tally[result.outcome.value] += 1
            summary[name] = tally
        return summary

    def failures(self) -> List[StageResult]:
        return [r for results in self.stages().values() for r in results if r.failed]

    def follow_ups(self) -> List[str]:
        """Embed sources that were not downloaded because no provider handles them."""
        return [r.detail for r in self.downloads if r.outcome is Outcome.UNSUPPORTED]


@dataclass(frozen=True)
class DirectVideo:
    url: str
    filename: str


@dataclass(frozen=True)
class VimeoEmbed:
    url: str
    video_id: str

    @property
    def filename(self) -> str:
        return Config.VIMEO_FILENAME.format(video_id=self.video_id)

    @property
    def config_url(self) -> str:
        return Config.VIMEO_CONFIG_URL.format(video_id=self.video_id)


@dataclass(frozen=True)
class UnsupportedEmbed:
    src: str


@dataclass(frozen=True)
class NoMedia:
    pass


MediaTarget = Union[DirectVideo, VimeoEmbed, UnsupportedEmbed, NoMedia]


@dataclass(frozen=True)
class ResolvedMedia:
    """A concrete media URL and the filename it is saved under."""
    url: str
    filename: str

# ============================================================================
# URL UTILITIES
# ============================================================================

class URLNormalizer:
    """Turns raw addresses into canonical absolute http(s) URLs."""

    SCHEMES = ("http", "https")
    DEFAULT_PREFIX = "https://"

    _SCHEME_PATTERN = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*):(.*)$", re.DOTALL)
    _EXPLICIT_SCHEME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")
    _CONTROL_PATTERN = re.compile(r"[\x00-\x1f\x7f]")
    _WHITESPACE_PATTERN = re.compile(r"\s")
    _HOST_PATTERN = re.compile(r"^(?:[\w\-]+\.)*[\w\-]+\.?$")

    @classmethod
    def normalize(cls, raw: str) -> str:
        """
        Parse `raw` as an absolute URL, retrying once with an https:// prefix.

        Args:
            raw: Address as found in the input table or a src attribute.

        Returns:
            Canonical URL with lowercase scheme and host, and "/" for an
            empty path.

        Raises:
            NormalizationError: neither attempt produced a valid URL.
        """
        url = cls._parse_absolute(raw)
        # an explicit scheme:// that did not parse is not a missing scheme
        if url is None and not cls._EXPLICIT_SCHEME_PATTERN.match(raw):
            url = cls._parse_absolute(cls.DEFAULT_PREFIX + raw)
        if url is None:
            raise NormalizationError(raw)
        return url

    @classmethod
    def _parse_absolute(cls, candidate: str) -> Optional[str]:
        if (not candidate or candidate != candidate.strip()
                or cls._CONTROL_PATTERN.search(candidate)):
            return None

        match = cls._SCHEME_PATTERN.match(candidate)
        if not match or match.group(1).lower() not in cls.SCHEMES:
            return None
        scheme = match.group(1).lower()

        # http(s) authority parsing tolerates any number of slashes after the colon
        rest = match.group(2).lstrip("/\\")
        try:
            parts = urlsplit(f"{scheme}://{rest}")
            parts.port  # raises ValueError for a non-numeric or out-of-range port
        except ValueError:
            return None

        host = parts.hostname
        if (not host or cls._WHITESPACE_PATTERN.search(parts.netloc)
                or not cls._valid_host(host)):
            return None

        userinfo, at, hostport = parts.netloc.rpartition("@")
        netloc = userinfo + at + hostport.lower()
        # spaces and other unsafe characters in path, query and fragment are percent-encoded
        return urlunsplit((
            scheme,
            netloc,
            requote_uri(parts.path or "/"),
            requote_uri(parts.query),
            requote_uri(parts.fragment),
        ))

    @classmethod
    def _valid_host(cls, host: str) -> bool:
        if ":" in host:
            try:
                ipaddress.IPv6Address(host)
            except ValueError:
                return False
            return True
        return bool(cls._HOST_PATTERN.match(host))


def last_path_segment(url: str) -> str:
    """Last segment of the URL path, e.g. 'clip.mp4' for https://x/media/clip.mp4."""
    segment = urlsplit(url).path.rsplit("/", 1)[-1]
    if segment in ("", ".", ".."):
        raise ResolutionError(f"No filename in the path of {url}")
    return segment


def vimeo_video_id(url: str) -> str:
    """Numeric Vimeo id, taken from the final non-empty path segment."""
    segments = [s for s in urlsplit(url).path.split("/") if s]
    if not segments or not segments[-1].isdigit():
        raise ResolutionError(f"No numeric Vimeo id in {url}")
    return segments[-1]

# ============================================================================
# NAME UTILITIES
# ============================================================================

_UNSAFE_CHARS = re.compile(r"[^\w\s\-]")
_WHITESPACE_RUN = re.compile(r"\s+")


def sanitize_name(name: str) -> str:
    """Drop everything but word characters, hyphens and whitespace; join words with '_'."""
    cleaned = _UNSAFE_CHARS.sub("", name).strip()
    return _WHITESPACE_RUN.sub("_", cleaned)


def assign_directories(records: Iterable[InstitutionRecord]) -> List[Tuple[InstitutionRecord, str]]:
    """
    Map every record to the directory it is mirrored into.

    The first record with a given sanitized name keeps it; later records
    with the same name get their row number appended. Names that sanitize
    to nothing become row_{row}. Assignment depends only on row order.
    """
    claimed = set()
    assigned = []
    for record in records:
        name = sanitize_name(record.display_name) or f"row_{record.row}"
        while name in claimed:
            name = f"{name}_{record.row}"
        claimed.add(name)
        assigned.append((record, name))
    return assigned

# ============================================================================
# ARTIFACT STORE
# ============================================================================

def artifact_key(group: str, name: str) -> str:
    return f"{group}/{name}"


def fragment_name(index: int) -> str:
    return Config.FRAGMENT_TEMPLATE.format(index=index)


class ArtifactStore(Protocol):
    """
    Append-only storage for crawler artifacts.

    Keys are "group/name" strings, one group per institution. Nothing is
    ever overwritten: writers refuse keys that already exist.
    """

    def exists(self, key: str) -> bool: ...

    def ensure_group(self, group: str) -> None: ...

    def groups(self) -> List[str]: ...

    def names(self, group: str) -> List[str]: ...

    def read_text(self, key: str) -> str: ...

    def write_text(self, key: str, text: str) -> None: ...

    def write_stream(self, key: str, chunks: Iterable[bytes]) -> int: ...


def is_complete(store: ArtifactStore, key: str) -> bool:
    """True when the artifact (or group) for `key` has already been produced."""
    return store.exists(key)


class FilesystemStore:
    """ArtifactStore backed by a directory tree: group -> directory, name -> file."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, key: str) -> Path:
        return self.root / key

    def create_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InputError(f"Cannot create output directory {self.root}: {e}") from e

    def exists(self, key: str) -> bool:
        return self.path(key).exists()

    def ensure_group(self, group: str) -> None:
        try:
            self.path(group).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory {self.path(group)}: {e}") from e

    def groups(self) -> List[str]:
        try:
            return sorted(p.name for p in self.root.iterdir() if p.is_dir())
        except OSError as e:
            raise InputError(f"Cannot list output directory {self.root}: {e}") from e

    def names(self, group: str) -> List[str]:
        try:
            return sorted(p.name for p in self.path(group).iterdir() if p.is_file())
        except OSError as e:
            raise StorageError(f"Cannot list {self.path(group)}: {e}") from e

    def read_text(self, key: str) -> str:
        try:
            return self.path(key).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise StorageError(f"Cannot read {self.path(key)}: {e}") from e

    def write_text(self, key: str, text: str) -> None:
        try:
            # "x" refuses to overwrite an existing artifact
            with open(self.path(key), "x", encoding="utf-8", newline="") as f:
                f.write(text)
        except OSError as e:
            raise StorageError(f"Cannot write {self.path(key)}: {e}") from e

    def write_stream(self, key: str, chunks: Iterable[bytes]) -> int:
        """
        Stream `chunks` into `key` through a .part file.

        The final name only appears once every chunk has been written, so an
        interrupted download is retried on the next run instead of being
        taken for a finished one.

        Returns:
            Number of bytes written.
        """
        final_path = self.path(key)
        part_path = final_path.with_name(final_path.name + Config.PARTIAL_SUFFIX)
        total_size = 0
        try:
            with open(part_path, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    total_size += len(chunk)
            if final_path.exists():
                raise StorageError(f"Refusing to overwrite {final_path}")
            part_path.replace(final_path)
        except OSError as e:
            part_path.unlink(missing_ok=True)
            raise StorageError(f"Cannot write {final_path}: {e}") from e
        except CrawlerError:
            part_path.unlink(missing_ok=True)
            raise
        return total_size

# ============================================================================
# FETCH UTILITIES
# ============================================================================

class MediaFetcher:
    """Plain GET requests through a single requests session."""

    def __init__(self, timeout: Optional[float] = Config.TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_text(self, url: str) -> str:
        """Fetch a page body as text. Any status code is accepted."""
        logger.info(f"Fetching webpage: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(url, e) from e

        # requests falls back to ISO-8859-1 when the server names no charset
        if "charset" not in response.headers.get("Content-Type", "").lower():
            response.encoding = response.apparent_encoding or "utf-8"

        logger.debug(f"Fetched {url} (Status: {response.status_code})")
        return response.text

    def fetch_json(self, url: str):
        logger.info(f"Fetching JSON: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(url, e) from e

        try:
            return response.json()
        except ValueError as e:
            raise ResolutionError(f"{url} did not return JSON: {e}", FailureKind.JSON_SHAPE) from e

    def stream(self, url: str) -> Iterator[bytes]:
        """Yield the body of `url` in chunks without buffering it in memory."""
        logger.info(f"Downloading media: {url}")
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=Config.CHUNK_SIZE):
                    if chunk:
                        yield chunk
        except requests.RequestException as e:
            raise FetchError(url, e) from e

# ============================================================================
# ADDRESS TABLE
# ============================================================================

class AddressTable:
    """The WEBADDR/INSTNM table of institutions whose address normalized."""

    STAGE = "addresses"
    HEADER = [Config.ADDRESS_COLUMN, Config.NAME_COLUMN]

    @staticmethod
    def read_records(path: Path) -> List[InstitutionRecord]:
        """Read records from any CSV carrying the WEBADDR and INSTNM columns."""
        try:
            with open(path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
                reader = csv.DictReader(f)
                fieldnames = reader.fieldnames or []
                for column in AddressTable.HEADER:
                    if column not in fieldnames:
                        raise InputError(f"{column} column not found in {path}")

                return [
                    InstitutionRecord(
                        row=row,
                        raw_address=(values.get(Config.ADDRESS_COLUMN) or ""),
                        display_name=(values.get(Config.NAME_COLUMN) or ""),
                    )
                    for row, values in enumerate(reader, start=1)
                ]
        except (OSError, csv.Error) as e:
            raise InputError(f"Cannot read {path}: {e}") from e

    @staticmethod
    def build(source: Path, target: Path) -> List[StageResult]:
        """
        Write `target` from `source`, keeping only rows whose address normalizes.

        Skipped entirely when `target` already exists.
        """
        if target.exists():
            logger.info(f"{target} already exists. Skipping creation.")
            return []

        records = AddressTable.read_records(source)
        results = []
        part_path = target.with_name(target.name + Config.PARTIAL_SUFFIX)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(part_path, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(AddressTable.HEADER)
                for record in records:
                    try:
                        url = URLNormalizer.normalize(record.raw_address)
                    except NormalizationError as e:
                        logger.warning(f"Error processing URL for {record.display_name!r}: {e}")
                        results.append(StageResult.from_error(AddressTable.STAGE, f"row {record.row}", e))
                        continue
                    writer.writerow([url, record.display_name])
                    results.append(StageResult(AddressTable.STAGE, f"row {record.row}", Outcome.DONE, detail=url))
            part_path.replace(target)
        except OSError as e:
            raise InputError(f"Cannot write {target}: {e}") from e

        kept = sum(1 for r in results if not r.failed)
        logger.info(f"Wrote {target} ({kept}/{len(records)} addresses kept)")
        return results

    @staticmethod
    def load(path: Path) -> List[InstitutionRecord]:
        return AddressTable.read_records(path)

# ============================================================================
# PAGE MIRROR
# ============================================================================

class PageMirror:
    """Fetch and store one homepage per institution directory."""

    STAGE = "mirror"

    def __init__(self, store: ArtifactStore, fetcher: MediaFetcher):
        self.store = store
        self.fetcher = fetcher

    def mirror(self, url: str, group: str) -> StageResult:
        page_key = artifact_key(group, Config.PAGE_FILENAME)

        if is_complete(self.store, group) and is_complete(self.store, page_key):
            logger.info(f"Skipping {group} as it already exists with {Config.PAGE_FILENAME}.")
            return StageResult(self.STAGE, group, Outcome.SKIPPED, detail=url)

        try:
            self.store.ensure_group(group)
            html = self.fetcher.fetch_text(url)
            self.store.write_text(page_key, html)
        except FetchError as e:
            logger.warning(f"Skipping {url} ({group}) due to fetch error: {e.cause}")
            return StageResult.from_error(self.STAGE, group, e)
        except StorageError as e:
            logger.error(f"Could not store page for {group}: {e}")
            return StageResult.from_error(self.STAGE, group, e)

        logger.info(f"Mirrored {url} -> {page_key}")
        return StageResult(self.STAGE, group, Outcome.DONE, detail=url)

# ============================================================================
# MEDIA EXTRACTOR
# ============================================================================

class MediaExtractor:
    """Split the <video>/<iframe> elements of a mirrored page into fragment files."""

    STAGE = "extract"

    def __init__(self, store: ArtifactStore):
        self.store = store

    def extract(self, group: str) -> List[StageResult]:
        page_key = artifact_key(group, Config.PAGE_FILENAME)
        try:
            html = self.store.read_text(page_key)
        except StorageError as e:
            logger.error(f"Cannot read mirrored page for {group}: {e}")
            return [StageResult.from_error(self.STAGE, page_key, e)]

        soup = BeautifulSoup(html, 'html.parser')
        elements = soup.find_all(list(Config.MEDIA_TAGS))
        logger.info(f"Found {len(elements)} embedded media elements in {group}")

        results = []
        for index, element in enumerate(elements, start=1):
            key = artifact_key(group, fragment_name(index))
            if is_complete(self.store, key):
                logger.debug(f"Skipping existing fragment: {key}")
                results.append(StageResult(self.STAGE, key, Outcome.SKIPPED))
                continue

            try:
                self.store.write_text(key, str(element))
            except StorageError as e:
                logger.error(f"Could not store fragment {key}: {e}")
                results.append(StageResult.from_error(self.STAGE, key, e))
                continue

            logger.info(f"[{element.name}] saved {key}")
            results.append(StageResult(self.STAGE, key, Outcome.DONE, detail=element.name))

        return results

# ============================================================================
# MEDIA CLASSIFICATION & RESOLUTION
# ============================================================================

def classify_fragment(markup: str) -> MediaTarget:
    """
    Decide what a stored fragment points at.

    A <video src> is a direct download. An <iframe src> on a vimeo.com host
    is a Vimeo embed; any other iframe source is reported as unsupported.
    Anything else carries no media.

    Raises:
        NormalizationError: the video src is not a usable URL.
        ResolutionError: no filename or Vimeo id can be derived from the URL.
    """
    soup = BeautifulSoup(markup, 'html.parser')

    video = soup.find('video', src=True)
    if video is not None:
        url = URLNormalizer.normalize(video['src'])
        return DirectVideo(url=url, filename=last_path_segment(url))

    iframe = soup.find('iframe', src=True)
    if iframe is not None:
        src = iframe['src']
        try:
            url = URLNormalizer.normalize(src)
        except NormalizationError:
            return UnsupportedEmbed(src=src)

        if Config.VIMEO_HOST in (urlsplit(url).hostname or ""):
            return VimeoEmbed(url=url, video_id=vimeo_video_id(url))
        return UnsupportedEmbed(src=src)

    return NoMedia()


def extract_progressive_url(config) -> str:
    """
    Read request.files.progressive.url from a Vimeo player config document.

    Newer configs carry a list of progressive renditions under the same key;
    the widest one is used.
    """
    try:
        progressive = config["request"]["files"]["progressive"]
    except (KeyError, TypeError) as e:
        raise ResolutionError(f"Vimeo config has no request.files.progressive: {e!r}",
                              FailureKind.JSON_SHAPE) from e

    if isinstance(progressive, list):
        renditions = [r for r in progressive if isinstance(r, dict) and r.get("url")]
        if not renditions:
            raise ResolutionError("Vimeo config lists no progressive renditions", FailureKind.JSON_SHAPE)
        progressive = max(renditions, key=lambda r: r.get("width") or 0)

    url = progressive.get("url") if isinstance(progressive, dict) else None
    if not isinstance(url, str) or not url:
        raise ResolutionError("Vimeo config has no request.files.progressive.url", FailureKind.JSON_SHAPE)
    return url


class MediaResolver:
    """Turn a downloadable MediaTarget into a concrete URL."""

    def __init__(self, fetcher: MediaFetcher):
        self.fetcher = fetcher

    def resolve(self, target: MediaTarget) -> ResolvedMedia:
        if isinstance(target, DirectVideo):
            return ResolvedMedia(url=target.url, filename=target.filename)

        if isinstance(target, VimeoEmbed):
            config = self.fetcher.fetch_json(target.config_url)
            url = extract_progressive_url(config)
            logger.debug(f"Vimeo {target.video_id} resolved to {url}")
            return ResolvedMedia(url=url, filename=target.filename)

        raise ResolutionError(f"Nothing to download for {target!r}")

# ============================================================================
# MEDIA DOWNLOADER
# ============================================================================

class MediaDownloader:
    """Download the media behind each stored fragment."""

    STAGE = "download"

    def __init__(self, store: ArtifactStore, fetcher: MediaFetcher,
                 resolver: Optional[MediaResolver] = None):
        self.store = store
        self.fetcher = fetcher
        self.resolver = resolver or MediaResolver(fetcher)

    def fragment_keys(self, group: str) -> List[str]:
        """Fragment keys of a group in index order."""
        indexed = []
        for name in self.store.names(group):
            match = Config.FRAGMENT_PATTERN.match(name)
            if match:
                indexed.append((int(match.group(1)), name))
        return [artifact_key(group, name) for _, name in sorted(indexed)]

    def process(self, group: str, fragment_key: str) -> StageResult:
        try:
            target = classify_fragment(self.store.read_text(fragment_key))
        except CrawlerError as e:
            logger.warning(f"Cannot classify {fragment_key}: {e}")
            return StageResult.from_error(self.STAGE, fragment_key, e)

        if isinstance(target, NoMedia):
            return StageResult(self.STAGE, fragment_key, Outcome.SKIPPED)

        if isinstance(target, UnsupportedEmbed):
            logger.info(f"Unsupported embed in {fragment_key}, follow up manually: {target.src}")
            return StageResult(self.STAGE, fragment_key, Outcome.UNSUPPORTED, detail=target.src)

        media_key = artifact_key(group, target.filename)
        if is_complete(self.store, media_key):
            logger.info(f"Skipping existing file: {media_key}")
            return StageResult(self.STAGE, fragment_key, Outcome.SKIPPED, detail=media_key)

        try:
            resolved = self.resolver.resolve(target)
            total_size = self.store.write_stream(media_key, self.fetcher.stream(resolved.url))
        except CrawlerError as e:
            logger.warning(f"Failed to download media for {fragment_key}: {e}")
            return StageResult.from_error(self.STAGE, fragment_key, e)

        logger.info(f"Downloaded {resolved.url} -> {media_key} ({total_size} bytes)")
        return StageResult(self.STAGE, fragment_key, Outcome.DONE, detail=media_key)

# ============================================================================
# MAIN ORCHESTRATOR
# ============================================================================

class CrawlerPipeline:
    """Run the four stages, each as a full pass, over the institution table."""

    def __init__(self, input_csv: Path = Config.INPUT_CSV,
                 address_table: Path = Config.ADDRESS_TABLE,
                 output_dir: Path = Config.OUTPUT_DIR,
                 fetcher: Optional[MediaFetcher] = None,
                 store: Optional[FilesystemStore] = None,
                 halt_on_error: bool = Config.HALT_ON_ERROR):
        self.input_csv = Path(input_csv)
        self.address_table = Path(address_table)
        self.store = store or FilesystemStore(Path(output_dir))
        self.fetcher = fetcher or MediaFetcher()
        self.halt_on_error = halt_on_error

        self.mirror = PageMirror(self.store, self.fetcher)
        self.extractor = MediaExtractor(self.store)
        self.downloader = MediaDownloader(self.store, self.fetcher)

    def run(self) -> PipelineReport:
        report = PipelineReport()

        self._banner("Building address table")
        for result in AddressTable.build(self.input_csv, self.address_table):
            self._record(report.addresses, result)

        self.store.create_root()

        self._banner("Mirroring pages")
        self.mirror_pages(report)

        self._banner("Extracting embedded media")
        self.extract_media(report)

        self._banner("Downloading media")
        self.download_media(report)

        self._summarize(report)
        return report

    def mirror_pages(self, report: PipelineReport) -> None:
        records = AddressTable.load(self.address_table)
        logger.info(f"Mirroring {len(records)} institution pages")

        for record, group in assign_directories(records):
            try:
                url = URLNormalizer.normalize(record.raw_address)
            except NormalizationError as e:
                logger.warning(f"Error processing URL for {record.display_name!r}: {e}")
                self._record(report.pages, StageResult.from_error(PageMirror.STAGE, group, e))
                continue
            self._record(report.pages, self.mirror.mirror(url, group))

    def extract_media(self, report: PipelineReport) -> None:
        for group in self.store.groups():
            if not is_complete(self.store, artifact_key(group, Config.PAGE_FILENAME)):
                continue
            for result in self.extractor.extract(group):
                self._record(report.fragments, result)

    def download_media(self, report: PipelineReport) -> None:
        for group in self.store.groups():
            try:
                keys = self.downloader.fragment_keys(group)
            except StorageError as e:
                logger.error(f"Cannot list fragments of {group}: {e}")
                self._record(report.downloads, StageResult.from_error(MediaDownloader.STAGE, group, e))
                continue
            for key in keys:
                self._record(report.downloads, self.downloader.process(group, key))

    def _record(self, results: List[StageResult], result: StageResult) -> None:
        results.append(result)
        if result.failed and self.halt_on_error:
            raise PipelineHalted(result)

    def _banner(self, title: str) -> None:
        logger.info(f"\n{'='*70}")
        logger.info(title)
        logger.info(f"{'='*70}")

    def _summarize(self, report: PipelineReport) -> None:
        logger.info(f"\n{'='*70}")
        logger.info("Summary:")
        for stage, tally in report.counts().items():
            logger.info(f"  {stage:10s} " + ", ".join(f"{k}={v}" for k, v in tally.items()))
        for src in report.follow_ups():
            logger.info(f"  follow up: {src}")
        logger.info(f"  Output directory: {self.store.root}")

# ============================================================================
# ENTRY POINT
# ============================================================================

def main() -> int:
    """Main entry point."""
    setup_logging()
    try:
        CrawlerPipeline().run()
    except InputError as e:
        logger.error(f"Aborting: {e}")
        return 1
    except PipelineHalted as e:
        logger.error(str(e))
        return 1
    logger.info("Crawl completed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
