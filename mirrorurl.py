#!/usr/bin/env python3
import argparse
import json
import logging
import os
import stat
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Condition, Lock, Semaphore
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from requests.utils import requote_uri
from urllib3.util.retry import Retry

__version__ = "0.1.0"

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": f"mirrorurl/{__version__}",
    "Accept": "*/*",
}

HTML_TYPES = {"text/html", "application/xhtml+xml"}
HANDLED_SCHEMES = {"http", "https"}

ETAGS_FILE = ".etags.json"
TMP_SUFFIX = ".part"
CHUNK_SIZE = 64 * 1024


def default_threads() -> int:
    return min(10, os.cpu_count() or 1)


# -------------------- Settings --------------------


@dataclass
class Settings:
    url: str = ""
    target: str = ""
    concurrent: int = 10
    threads: int = field(default_factory=default_threads)
    unnamed: str = "__file.dat"
    connect_timeout: float = 60.0  # seconds
    fetch_timeout: float = 5.0  # minutes
    skip_file: Optional[str] = None
    no_etags: bool = False
    debug: int = 0
    debug_delay: int = 0  # milliseconds
    max_redirects: int = 10
    retries: int = 3


# -------------------- Errors --------------------


class SkipReason(Enum):
    TRANSPORT = "The transport is not supported"
    SKIP_LIST = "Path is in the skip list"
    NOT_RELATIVE = "URL is not relative to the base URL"
    FRAGMENT = "URL is a fragment"
    QUERY = "URL has a query"
    NOT_VALID = "URL is not valid"
    REDIRECT_NOT_RELATIVE = "Redirect is not relative to the base URL"
    TOO_MANY_REDIRECTS = "Too many redirects"


class MirrorError(Exception):
    pass


class StartupError(MirrorError):
    pass


class StatusError(MirrorError):
    def __init__(self, status: int, url: str):
        self.status = status
        self.url = url
        super().__init__(f"Status {status} fetching {url}")


class SkipError(MirrorError):
    """A benign reason for not processing a URL any further."""

    def __init__(self, url: str, reason: SkipReason, detail: Optional[str] = None):
        self.url = url
        self.reason = reason
        self.detail = detail
        super().__init__(url, reason, detail)

    def reason_text(self) -> str:
        if self.reason is SkipReason.NOT_VALID and self.detail:
            return f"URL is not valid: {self.detail}"
        if self.reason is SkipReason.REDIRECT_NOT_RELATIVE and self.detail:
            return f"Redirect to {self.detail} is not relative to the base URL"
        return self.reason.value

    def __str__(self) -> str:
        return f"Skipping {self.url}: {self.reason_text()}"


def skip_error_of(exc: BaseException) -> Optional[SkipError]:
    if isinstance(exc, SkipError):
        return exc
    if isinstance(exc.__cause__, SkipError):
        return exc.__cause__
    return None


# -------------------- URL scope --------------------


def remove_dot_segments(path: str) -> str:
    """Resolve "." and ".." in an absolute path (RFC 3986, 5.2.4)."""
    if not path.startswith("/"):
        return path
    segs = path.split("/")
    out: List[str] = []
    for seg in segs:
        if seg == ".":
            continue
        if seg == "..":
            # the leading "" keeps the path absolute
            if len(out) > 1:
                out.pop()
            continue
        out.append(seg)
    if segs[-1] in (".", ".."):
        out.append("")
    return "/".join(out) or "/"


def normalize_url(url: str) -> str:
    p = urlsplit(requote_uri(url))
    path = remove_dot_segments(p.path) or "/"
    return urlunsplit((p.scheme.lower(), p.netloc.lower(), path, p.query, p.fragment))


def is_handled(url: str) -> None:
    if urlsplit(url).scheme.lower() not in HANDLED_SCHEMES:
        raise SkipError(url, SkipReason.TRANSPORT)


def full_path(url: str) -> str:
    # everything after the network location: path, query and fragment
    p = urlsplit(url)
    return url[len(p.scheme) + 3 + len(p.netloc) :]


def is_relative_to(url: str, base: str) -> bool:
    u, b = urlsplit(url), urlsplit(base)
    if u.netloc.lower() != b.netloc.lower():
        return False
    return full_path(url).startswith(full_path(base))


def relative_path(url: str, base: str) -> Optional[str]:
    if not is_relative_to(url, base):
        return None
    base_path = full_path(base)
    rel = full_path(url)[len(base_path) :]
    if not (base_path.endswith("/") or not rel or rel.startswith("/")):
        # /rootXYZ is not inside /root
        return None
    return rel.lstrip("/")


# -------------------- Skip list --------------------


class SkipList:
    def __init__(self, entries: Optional[Iterable[str]] = None):
        self.entries: List[str] = list(entries or [])

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SkipList":
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise StartupError(f"Failed to open skip list file {path}: {e}") from e
        except ValueError as e:
            raise StartupError(f"Failed to load skip list file {path}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(s, str) for s in data):
            raise StartupError(
                f"Failed to load skip list file {path}: expected an array of strings"
            )
        return cls(data)

    def matches(self, rel_path: str) -> bool:
        return any(rel_path.startswith(s) for s in self.entries)


# -------------------- ETag cache --------------------


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_json(path: Path, data: dict) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, path)


class ETagCache:
    """URL to ETag map in two generations.

    Lookups only ever see the generation loaded at startup; this run's
    observations go to the new generation and are merged over the old one
    when the cache is persisted.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        old: Optional[Dict[str, str]] = None,
        enabled: bool = True,
    ):
        self.path = path
        self.enabled = enabled
        self._old: Dict[str, str] = dict(old or {})
        self._new: Dict[str, str] = {}
        self._lock = Lock()

    @classmethod
    def disabled(cls) -> "ETagCache":
        return cls(enabled=False)

    @classmethod
    def load(cls, path: Path) -> "ETagCache":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return cls(path)
        except OSError as e:
            raise StartupError(f"Failed to open etags {path}: {e}") from e
        except ValueError as e:
            raise StartupError(f"Failed to load etags file {path}: {e}") from e
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise StartupError(
                f"Failed to load etags file {path}: expected an object of strings"
            )
        return cls(path, data)

    def find(self, url: str) -> Optional[str]:
        return self._old.get(url)

    def record(self, urls: Iterable[str], etag: str) -> None:
        with self._lock:
            for u in urls:
                self._new[u] = etag
                logging.debug("Set etag for %s to %s", u, etag)

    def recorded(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._new)

    def persist(self) -> bool:
        if not self.enabled or self.path is None:
            return False
        with self._lock:
            if not self._new:
                return False
            merged = dict(self._old)
            merged.update(self._new)
        try:
            atomic_write_json(self.path, merged)
        except OSError as e:
            raise MirrorError(f"Error writing {self.path}: {e}") from e
        logging.debug("Saved %d etags to %s", len(merged), self.path)
        return True


# -------------------- Stats --------------------


def format_qty(qty: int, single: str, plural: str) -> str:
    return f"{qty} {single if qty == 1 else plural}"


@dataclass
class Stats:
    downloads: int = 0
    download_bytes: int = 0
    html_docs: int = 0
    html_bytes: int = 0
    not_modified: int = 0
    skipped: int = 0
    errored: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def add_download(self, nbytes: int) -> None:
        with self._lock:
            self.downloads += 1
            self.download_bytes += nbytes

    def add_html(self, nbytes: int) -> None:
        with self._lock:
            self.html_docs += 1
            self.html_bytes += nbytes

    def add_not_modified(self) -> None:
        with self._lock:
            self.not_modified += 1

    def add_skipped(self) -> None:
        with self._lock:
            self.skipped += 1

    def add_errored(self) -> None:
        with self._lock:
            self.errored += 1

    def snapshot(self) -> "Stats":
        with self._lock:
            return Stats(
                downloads=self.downloads,
                download_bytes=self.download_bytes,
                html_docs=self.html_docs,
                html_bytes=self.html_bytes,
                not_modified=self.not_modified,
                skipped=self.skipped,
                errored=self.errored,
            )

    def summary(self) -> List[str]:
        s = self.snapshot()
        return [
            "{} parsed ({})".format(
                format_qty(s.html_docs, "document", "documents"),
                format_qty(s.html_bytes, "byte", "bytes"),
            ),
            "{} downloaded ({}), {} not modified, {} skipped, {} errored".format(
                format_qty(s.downloads, "file", "files"),
                format_qty(s.download_bytes, "byte", "bytes"),
                s.not_modified,
                s.skipped,
                s.errored,
            ),
        ]

    def report(self) -> None:
        for line in self.summary():
            logging.info("%s", line)


# -------------------- HTTP --------------------


class RedirectPolicy:
    """Decides each redirect hop of a single fetch."""

    def __init__(self, root: str, max_redirects: int = 10):
        self.root = root
        self.max_redirects = max_redirects

    def check(self, chain: List[str], candidate: str) -> None:
        # chain holds every URL already requested for this fetch, original first
        if len(chain) > self.max_redirects:
            raise SkipError(chain[0], SkipReason.TOO_MANY_REDIRECTS)
        if not is_relative_to(candidate, self.root):
            raise SkipError(chain[0], SkipReason.REDIRECT_NOT_RELATIVE, candidate)


def build_session(
    retries: int = 3, pool_size: int = 10, headers: Optional[Dict[str, str]] = None
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool = max(pool_size, 10)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


class MirrorClient:
    def __init__(
        self,
        session: requests.Session,
        policy: RedirectPolicy,
        timeout: Tuple[float, float],
    ):
        self.session = session
        self.policy = policy
        self.timeout = timeout

    def get(
        self, url: str, headers: Optional[Dict[str, str]] = None
    ) -> requests.Response:
        chain: List[str] = []
        history: List[requests.Response] = []
        current = url
        while True:
            resp = self.session.get(
                current,
                headers=headers,
                timeout=self.timeout,
                stream=True,
                allow_redirects=False,
            )
            location = self.session.get_redirect_target(resp)
            if not location:
                resp.history = history
                return resp
            chain.append(current)
            history.append(resp)
            candidate = normalize_url(urljoin(resp.url, location))
            resp.close()
            self.policy.check(chain, candidate)
            logging.debug("Following redirect from %s to %s", current, candidate)
            current = candidate

    def close(self) -> None:
        self.session.close()


def is_html(resp: requests.Response) -> bool:
    content_type = resp.headers.get("Content-Type")
    if not content_type:
        logging.debug("No content type received for %s", resp.url)
        return False
    ct = content_type.split(";")[0].strip().lower()
    logging.debug("MIME type of %s is %s", resp.url, ct)
    return ct in HTML_TYPES


# -------------------- HTML --------------------


def bs4_parse(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def parse_html(html: Union[str, bytes]) -> List[str]:
    soup = bs4_parse(html)
    return [a.get("href") for a in soup.select("a[href]")]


def resolve_href(base_url: str, href: str, root: str) -> str:
    """Resolve an anchor href against its page and check it is crawlable."""
    href = href.strip()
    try:
        parts = urlsplit(urljoin(base_url, href))
        parts.port  # raises on a malformed port
        url = normalize_url(parts.geturl())
    except ValueError as e:
        raise SkipError(href, SkipReason.NOT_VALID, str(e)) from e
    logging.debug("href %s of %s -> %s", href, base_url, url)
    is_handled(url)
    # urljoin drops an empty "#" or "?", the raw href still shows it
    if parts.fragment or "#" in href:
        raise SkipError(url, SkipReason.FRAGMENT)
    if parts.query or "?" in href:
        raise SkipError(url, SkipReason.QUERY)
    if not is_relative_to(url, root):
        raise SkipError(url, SkipReason.NOT_RELATIVE)
    return url


# -------------------- Files --------------------


def create_directories(path: Path) -> None:
    for d in [*reversed(path.parents), path]:
        if str(d) in ("", "."):
            continue
        tried = False
        while True:
            try:
                st = os.stat(d)
            except FileNotFoundError:
                try:
                    os.mkdir(d)
                except OSError:
                    # another task may have created it first
                    if tried:
                        raise
                    tried = True
                    continue
                logging.debug("Created directory %s", d)
                break
            if not stat.S_ISDIR(st.st_mode):
                raise MirrorError(f"{d} already exists and is not a directory")
            break


def write_atomic(
    path: Path, chunks: Iterable[bytes], pause: Optional[Callable[[], None]] = None
) -> int:
    tmp = path.with_name(path.name + TMP_SUFFIX)
    written = 0
    try:
        with open(tmp, "wb") as f:
            if pause:
                pause()
            for chunk in chunks:
                if not chunk:
                    continue
                logging.debug("Read %d bytes", len(chunk))
                f.write(chunk)
                written += len(chunk)
                if pause:
                    pause()
        os.replace(tmp, path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    return written


# -------------------- State --------------------


class Slot:
    def __init__(self, sem: Semaphore):
        self._sem = sem
        self._held = True

    def release(self) -> None:
        if self._held:
            self._held = False
            self._sem.release()

    def __enter__(self) -> "Slot":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class State:
    """Everything the crawl tasks share."""

    def __init__(self, settings: Settings):
        self.settings = settings
        try:
            url = normalize_url(settings.url)
            parts = urlsplit(url)
            parts.port  # raises on a malformed port
        except ValueError as e:
            raise StartupError(f"{settings.url} is not a valid URL: {e}") from e
        try:
            is_handled(url)
        except SkipError as e:
            raise StartupError(f"{url} is not an http or https URL") from e
        if not parts.hostname:
            raise StartupError(f"{settings.url} has no host")
        self.url = url

        self.target = Path(settings.target)
        if self.target.exists() and not self.target.is_dir():
            raise StartupError(f"{self.target} is not a directory")

        if settings.no_etags:
            self.etags = ETagCache.disabled()
        else:
            self.etags = ETagCache.load(self.target / ETAGS_FILE)

        if settings.skip_file:
            self.skip_list = SkipList.load(settings.skip_file)
        else:
            self.skip_list = SkipList()

        try:
            session = build_session(settings.retries, settings.concurrent)
        except Exception as e:
            raise StartupError(f"Failed to create HTTP client: {e}") from e
        self.client = MirrorClient(
            session,
            RedirectPolicy(url, settings.max_redirects),
            (settings.connect_timeout, settings.fetch_timeout * 60),
        )

        self.stats = Stats()
        self._processed: Set[str] = set()
        self._processed_lock = Lock()
        self._slots = Semaphore(max(1, settings.concurrent))

    def add_processed_url(self, url: str) -> bool:
        with self._processed_lock:
            if url in self._processed:
                return False
            self._processed.add(url)
            return True

    def acquire_slot(self) -> Slot:
        self._slots.acquire()
        return Slot(self._slots)

    def path_for_url(self, url: str) -> Path:
        rel = relative_path(url, self.url)
        if rel is None or ".." in rel.split("/"):
            raise SkipError(url, SkipReason.NOT_RELATIVE)
        if not rel:
            path = self.target / self.settings.unnamed
        else:
            if self.skip_list.matches(rel):
                raise SkipError(url, SkipReason.SKIP_LIST)
            path = self.target / rel
            if rel.endswith("/"):
                path = path / self.settings.unnamed
        root = os.path.abspath(self.target)
        if os.path.commonpath([root, os.path.abspath(path)]) != root:
            raise SkipError(url, SkipReason.NOT_RELATIVE)
        logging.debug("URL %s maps to file %s", url, path)
        return path

    def debug_delay(self) -> None:
        if self.settings.debug_delay > 0:
            time.sleep(self.settings.debug_delay / 1000)

    def close(self) -> None:
        self.client.close()


# -------------------- Download --------------------


def download(
    state: State, url: str, final_url: str, resp: requests.Response
) -> int:
    path = state.path_for_url(final_url)
    create_directories(path.parent)
    size = resp.headers.get("Content-Length") or "unknown"
    logging.info("Downloading %s to %s (size %s)", final_url, path, size)
    written = write_atomic(
        path, resp.iter_content(chunk_size=CHUNK_SIZE), state.debug_delay
    )

    etag = resp.headers.get("ETag")
    if etag:
        urls = [url] if url != final_url else []
        urls.append(final_url)
        state.etags.record(urls, etag)
    else:
        logging.debug("No etag header received from %s", final_url)
    return written


# -------------------- Walker --------------------


class WaitGroup:
    """Outstanding work of one walk invocation and its descendants."""

    def __init__(self, label: str, parent: Optional["WaitGroup"] = None):
        self.label = label
        self._parent = parent
        self._count = 1
        self._cond = Condition()
        if parent is not None:
            parent.add()

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            drained = self._count == 0
            if drained:
                self._cond.notify_all()
        if drained:
            logging.debug("Finished %s", self.label)
            if self._parent is not None:
                self._parent.done()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


class Walker:
    def __init__(self, state: State):
        self.state = state
        settings = state.settings
        self._pool = ThreadPoolExecutor(
            # a fetch blocks its worker for as long as it holds a slot
            max_workers=max(1, settings.threads) + max(1, settings.concurrent),
            thread_name_prefix="walk",
        )

    def run(self) -> None:
        tree = WaitGroup(self.state.url)
        try:
            self._pool.submit(self.walk, self.state.url, tree)
            tree.wait()
        finally:
            self._pool.shutdown(wait=True, cancel_futures=True)

    def spawn(self, url: str, parent: WaitGroup) -> None:
        group = WaitGroup(url, parent)
        try:
            self._pool.submit(self.walk, url, group)
        except RuntimeError:
            group.done()
            raise

    def walk(self, url: str, group: WaitGroup) -> None:
        stats = self.state.stats
        try:
            self._walk(url, group)
        except Exception as e:
            skip = skip_error_of(e)
            if skip is not None:
                logging.info("%s", skip)
                stats.add_skipped()
            elif isinstance(e, MirrorError):
                logging.error("%s", e)
                stats.add_errored()
            else:
                logging.error("Failed to process %s: %s", url, e)
                stats.add_errored()
        finally:
            group.done()

    def _walk(self, url: str, group: WaitGroup) -> None:
        state = self.state
        if not state.add_processed_url(url):
            logging.debug("URL %s has already been processed", url)
            return

        state.path_for_url(url)

        headers: Dict[str, str] = {}
        old_etag = state.etags.find(url)
        if old_etag is not None:
            logging.debug("Previous etag value: %s", old_etag)
            headers["If-None-Match"] = old_etag

        with state.acquire_slot() as slot:
            logging.info("Fetching %s", url)
            resp = state.client.get(url, headers=headers)
            with resp:
                final_url = normalize_url(resp.url) if resp.history else url
                if final_url != url:
                    logging.info("%s was redirected to %s", url, final_url)

                status = resp.status_code
                if not 200 <= status < 300:
                    if status == 304 and old_etag is not None:
                        slot.release()
                        state.stats.add_not_modified()
                        logging.info("%s is not modified", url)
                        return
                    raise StatusError(status, final_url)
                logging.debug("Status %s", status)

                if is_html(resp):
                    body = resp.content
                    slot.release()
                    state.stats.add_html(len(body))
                    self.process_html(final_url, body, group)
                else:
                    nbytes = download(state, url, final_url, resp)
                    slot.release()
                    state.stats.add_download(nbytes)

    def process_html(self, url: str, html: bytes, group: WaitGroup) -> None:
        for href in parse_html(html):
            try:
                child = resolve_href(url, href, self.state.url)
            except SkipError as e:
                logging.info("%s", e)
                self.state.stats.add_skipped()
                continue
            self.spawn(child, group)


# -------------------- Main --------------------


def mirror(settings: Settings) -> Stats:
    state = State(settings)
    try:
        Walker(state).run()
    finally:
        state.close()
    try:
        state.etags.persist()
    except MirrorError:
        # the crawl is complete, report it before failing
        state.stats.report()
        raise
    return state.stats.snapshot()


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib
            except ImportError:
                raise RuntimeError("TOML config needs Python 3.11+ or the tomli package")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config needs the PyYAML package")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError(f"{p}: top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError(f"{p}: config file must be .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mirrorurl",
        description="Mirror a web site subtree to a local directory.",
    )
    p.add_argument("--config", default=None, help="TOML or YAML file of option defaults")

    p.add_argument("url", help="URL to mirror")
    p.add_argument("target", help="target directory")
    p.add_argument(
        "-c",
        "--concurrent",
        type=int,
        default=10,
        help="maximum number of concurrent requests to the web server",
    )
    p.add_argument(
        "-t",
        "--threads",
        type=int,
        default=default_threads(),
        help="maximum number of worker threads to run",
    )
    p.add_argument(
        "-u", "--unnamed", default="__file.dat", help="file name to use for unnamed files"
    )
    p.add_argument(
        "--connect-timeout", type=float, default=60.0, help="connection timeout seconds"
    )
    p.add_argument(
        "--fetch-timeout", type=float, default=5.0, help="fetch timeout minutes"
    )
    p.add_argument(
        "-s",
        "--skip-file",
        default=None,
        help="JSON array file of relative paths to skip",
    )
    p.add_argument(
        "-e",
        "--no-etags",
        action="store_true",
        help="don't use etags to detect out of date files",
    )
    p.add_argument(
        "-d", "--debug", action="count", default=0, help="increase debug message level"
    )
    p.add_argument(
        "--debug-delay",
        type=int,
        default=0,
        help="artificial delay in ms after each data chunk",
    )
    p.add_argument(
        "--max-redirects", type=int, default=10, help="maximum redirects per fetch"
    )
    p.add_argument(
        "--retries", type=int, default=3, help="transport retries per request"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "fetch", "cache", "debug"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def clamp_threads(requested: int) -> int:
    cpus = os.cpu_count() or 1
    if requested < 1:
        return 1
    if requested > cpus:
        logging.warning(
            "Clamping number of threads to %d due to cpu count", cpus
        )
        return cpus
    return requested


def configure_logging(debug: int) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("urllib3").setLevel(
        logging.DEBUG if debug > 1 else logging.WARNING
    )


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except (OSError, RuntimeError, ValueError) as e:
        logging.error("Failed to load config: %s", e)
        return 2

    configure_logging(args.debug)

    settings = Settings(
        url=args.url,
        target=args.target,
        concurrent=max(1, args.concurrent),
        threads=clamp_threads(args.threads),
        unnamed=args.unnamed,
        connect_timeout=max(0.0, args.connect_timeout),
        fetch_timeout=max(0.0, args.fetch_timeout),
        skip_file=args.skip_file,
        no_etags=args.no_etags,
        debug=args.debug,
        debug_delay=max(0, args.debug_delay),
        max_redirects=max(0, args.max_redirects),
        retries=max(0, args.retries),
    )

    try:
        stats = mirror(settings)
    except MirrorError as e:
        logging.error("%s", e)
        return 1

    stats.report()
    return 0


if __name__ == "__main__":
    sys.exit(main())
