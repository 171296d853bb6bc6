#!/usr/bin/env python3
import argparse
import logging
import os
import posixpath
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from threading import BoundedSemaphore, Condition, Lock
from typing import Dict, List, Optional, Set, Tuple, Union
from urllib.parse import ParseResult, quote, unquote, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound
from requests.adapters import HTTPAdapter

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
# "mailto:x" carries a scheme, "localhost:8000" does not
SCHEME_PREFIX_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:(?!\d)")

INDEX_FILE = "index.html"
CHUNK_SIZE = 64 * 1024
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
FETCHABLE_SCHEMES = {"http", "https"}

# tag -> attribute carrying its link; anchors are pages, the rest resources
LINK_ATTRS: Dict[str, str] = {
    "a": "href",
    "link": "href",
    "script": "src",
    "img": "src",
}
PAGE_TAGS = {"a"}

# -------------------- Settings --------------------


@dataclass
class Settings:
    max_depth: int = 1
    concurrency: int = 5
    timeout: float = 30.0
    workers: int = 16
    output_dir: str = "."
    user_agent: Optional[str] = None
    verbose: bool = False


# -------------------- Errors --------------------


class MirrorError(Exception):
    kind = "error"

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message


class TransportError(MirrorError):
    kind = "transport"


class HTTPStatusError(MirrorError):
    kind = "http_status"

    def __init__(self, url: str, status_code: int, reason: str = ""):
        super().__init__(url, f"HTTP {status_code} {reason}".strip())
        self.status_code = status_code


class ParseError(MirrorError):
    kind = "parse"


class FilesystemError(MirrorError):
    kind = "filesystem"


class URLResolutionError(MirrorError):
    kind = "url"


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def normalize_url(p: ParseResult) -> str:
    scheme = p.scheme.lower()
    path = p.path
    if not path and scheme in FETCHABLE_SCHEMES:
        path = "/"
    return urlunparse(
        p._replace(scheme=scheme, netloc=p.netloc.lower(), path=path, fragment="")
    )


def url_key(u: str) -> str:
    return normalize_url(urlparse(u))


def is_html(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    return any(t in ct for t in HTML_CONTENT_TYPES)


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    pool = max(10, settings.concurrency)
    adapter = HTTPAdapter(max_retries=0, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if settings.user_agent:
        s.headers["User-Agent"] = settings.user_agent
    return s


# -------------------- Target + output layout --------------------


@dataclass(frozen=True)
class MirrorTarget:
    scheme: str
    host: str
    start_path: str
    query: str = ""
    root_dir: Path = Path(".")

    @property
    def start_url(self) -> str:
        return urlunparse((self.scheme, self.host, self.start_path, "", self.query, ""))


def site_root(host: str, output_root: Union[str, Path]) -> Path:
    return Path(output_root) / (sanitize_filename(host) or "host")


def parse_target(url: str, output_root: Union[str, Path] = ".") -> MirrorTarget:
    raw = (url or "").strip()
    if raw.startswith("//"):
        raw = "https:" + raw
    elif "://" not in raw and not SCHEME_PREFIX_RE.match(raw):
        raw = "https://" + raw
    try:
        p = urlparse(raw)
        p.port  # raises on a malformed port
    except ValueError as e:
        raise URLResolutionError(url, str(e)) from e
    scheme = p.scheme.lower()
    if scheme not in FETCHABLE_SCHEMES:
        raise URLResolutionError(url, f"unsupported scheme {p.scheme!r}")
    if not p.netloc:
        raise URLResolutionError(url, "missing host")
    host = p.netloc.lower()
    return MirrorTarget(
        scheme=scheme,
        host=host,
        start_path=p.path or "/",
        query=p.query,
        root_dir=site_root(host, output_root),
    )


def local_path(root_dir: Path, url: str) -> Path:
    """Map a URL onto the mirror tree; directory-like paths get an index file."""
    raw_path = urlparse(url).path
    cleaned = posixpath.normpath("/" + unquote(raw_path))
    segs = [seg for seg in cleaned.split("/") if seg]
    if (
        not raw_path
        or raw_path.endswith("/")
        or not segs
        or not os.path.splitext(segs[-1])[1]
    ):
        return root_dir.joinpath(*segs, INDEX_FILE)
    return root_dir.joinpath(*segs)


# -------------------- Visited / limiter / tracker --------------------


class VisitedSet:
    """URLs claimed during one run. Only try_claim mutates it."""

    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = Lock()

    def try_claim(self, url: str) -> bool:
        key = url_key(url)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def __contains__(self, url: str) -> bool:
        key = url_key(url)
        with self._lock:
            return key in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class FetchLimiter:
    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._sem = BoundedSemaphore(capacity)
        self._lock = Lock()
        self.in_flight = 0
        self.peak = 0

    def acquire(self) -> None:
        self._sem.acquire()
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)

    def release(self) -> None:
        with self._lock:
            self.in_flight -= 1
        self._sem.release()

    def __enter__(self) -> "FetchLimiter":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class TaskTracker:
    """Counts outstanding tasks; wait() returns once the count drains to zero.

    Children must be added before their parent calls done(), so the count
    cannot touch zero while work is still being registered.
    """

    def __init__(self):
        self._pending = 0
        self._cond = Condition()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def add(self) -> None:
        with self._cond:
            self._pending += 1

    def done(self) -> None:
        with self._cond:
            self._pending -= 1
            if self._pending <= 0:
                self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._pending <= 0, timeout)


# -------------------- HTML utils --------------------


def bs4_parse(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        resolved = resolve_link(fallback, tag["href"])
        if resolved is not None:
            return urlunparse(resolved)
    return fallback


def resolve_link(base: str, value: str) -> Optional[ParseResult]:
    try:
        p = urlparse(urljoin(base, value.strip()))
        p.port  # raises on a malformed port
    except ValueError as e:
        logging.debug("unresolvable link %r on %s: %s", value, base, e)
        return None
    if not p.scheme:
        p = p._replace(scheme=urlparse(base).scheme)
    # hosts compare case-insensitively against the target
    return p._replace(netloc=p.netloc.lower())


def iter_link_tags(soup: BeautifulSoup):
    # document order, i.e. pre-order depth-first
    for tag in soup.find_all(list(LINK_ATTRS)):
        attr = LINK_ATTRS[tag.name]
        value = tag.get(attr)
        if isinstance(value, str):
            yield tag, attr, value


# -------------------- Extraction --------------------


def collect_links(
    soup: BeautifulSoup, base_url: str, host: str
) -> Tuple[List[str], List[str]]:
    base = effective_base_url(soup, base_url)
    resources: List[str] = []
    pages: List[str] = []
    for tag, _, value in iter_link_tags(soup):
        p = resolve_link(base, value)
        if p is None or p.netloc != host or p.scheme not in FETCHABLE_SCHEMES:
            continue
        absu = normalize_url(p)
        if tag.name in PAGE_TAGS:
            pages.append(absu)
        else:
            resources.append(absu)
    return resources, pages


# -------------------- Rewriters --------------------


def rewrite_links(
    soup: BeautifulSoup,
    base_url: str,
    host: str,
    root_dir: Path,
    current_path: Path,
) -> int:
    """Point same-host links at their mirror copies, relative to current_path.

    Only attribute values change; nodes are never added or removed.
    """
    base = effective_base_url(soup, base_url)
    here = current_path.parent
    rewritten = 0
    for tag, attr, value in iter_link_tags(soup):
        p = resolve_link(base, value)
        if p is None or p.netloc != host:
            continue
        target = local_path(root_dir, urlunparse(p))
        # local paths are decoded; re-encode so "?" or "#" in a name stays literal
        rel = quote(Path(os.path.relpath(target, here)).as_posix(), safe="/")
        if p.fragment:
            rel = f"{rel}#{p.fragment}"
        tag[attr] = rel
        rewritten += 1

    # rewritten links are relative to the file itself, so a same-host
    # <base> has to point back at the document's own directory
    base_tag = soup.find("base", href=True)
    if base_tag is not None and urlparse(base).netloc == host:
        base_tag["href"] = "./"
    return rewritten


# -------------------- Run state --------------------


@dataclass(frozen=True)
class CrawlTask:
    url: str
    depth: int


@dataclass
class MirrorResult:
    start_url: str
    root_dir: Path
    fetched: List[str] = field(default_factory=list)
    saved: List[Path] = field(default_factory=list)
    errors: List[Tuple[str, str, str]] = field(default_factory=list)
    peak_in_flight: int = 0
    elapsed: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_fetch(self, url: str) -> None:
        with self._lock:
            self.fetched.append(url)

    def record_saved(self, p: Path) -> None:
        with self._lock:
            self.saved.append(p)

    def record_error(self, url: str, kind: str, message: str) -> None:
        with self._lock:
            self.errors.append((url, kind, message))


@dataclass
class MirrorRun:
    target: MirrorTarget
    settings: Settings
    session: requests.Session
    executor: ThreadPoolExecutor
    visited: VisitedSet = field(default_factory=VisitedSet)
    tracker: TaskTracker = field(default_factory=TaskTracker)
    limiter: Optional[FetchLimiter] = None
    result: Optional[MirrorResult] = None

    def __post_init__(self):
        if self.limiter is None:
            self.limiter = FetchLimiter(self.settings.concurrency)
        if self.result is None:
            self.result = MirrorResult(self.target.start_url, self.target.root_dir)


# -------------------- Fetch unit --------------------


def http_get(run: MirrorRun, url: str) -> requests.Response:
    run.result.record_fetch(url)
    try:
        return run.session.get(url, timeout=run.settings.timeout, stream=True)
    except requests.RequestException as e:
        raise TransportError(url, str(e)) from e


def save_stream(resp: requests.Response, dest: Path, url: str) -> None:
    try:
        ensure_parent_dir(dest)
        with open(dest, "wb") as f:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
    except requests.RequestException as e:
        raise TransportError(url, str(e)) from e
    except OSError as e:
        raise FilesystemError(url, f"{dest}: {e}") from e


def read_body(resp: requests.Response, url: str) -> bytes:
    try:
        return resp.content
    except requests.RequestException as e:
        raise TransportError(url, str(e)) from e


def parse_document(body: bytes, url: str) -> BeautifulSoup:
    try:
        return bs4_parse(body)
    except Exception as e:
        raise ParseError(url, str(e)) from e


def save_html(soup: BeautifulSoup, dest: Path, url: str) -> None:
    try:
        ensure_parent_dir(dest)
        dest.write_text(serialize_html(soup), encoding="utf-8")
    except OSError as e:
        raise FilesystemError(url, f"{dest}: {e}") from e


def fetch_task(run: MirrorRun, task: CrawlTask) -> None:
    url, depth = task.url, task.depth
    if not run.visited.try_claim(url):
        logging.debug("already claimed: %s", url)
        return

    dest = local_path(run.target.root_dir, url)

    # the slot is held until the body has been read or streamed to disk
    with run.limiter:
        resp = http_get(run, url)
        with resp:
            logging.info("GET %s [depth=%d] -> %s", url, depth, resp.status_code)
            if not 200 <= resp.status_code < 300:
                raise HTTPStatusError(url, resp.status_code, resp.reason or "")
            if not is_html(resp.headers.get("Content-Type")):
                save_stream(resp, dest, url)
                run.result.record_saved(dest)
                logging.info("saved %s -> %s", url, dest)
                return
            body = read_body(resp, url)

    soup = parse_document(body, url)
    resources, pages = collect_links(soup, url, run.target.host)
    for r in resources:
        schedule(run, CrawlTask(r, depth))
    if depth + 1 <= run.settings.max_depth:
        for pg in pages:
            schedule(run, CrawlTask(pg, depth + 1))

    rewrite_links(soup, url, run.target.host, run.target.root_dir, dest)
    save_html(soup, dest, url)
    run.result.record_saved(dest)
    logging.info("saved %s -> %s", url, dest)


def _run_task(run: MirrorRun, task: CrawlTask) -> None:
    try:
        fetch_task(run, task)
    except MirrorError as e:
        logging.warning("failed %s -> %s", task.url, e.message)
        run.result.record_error(task.url, e.kind, e.message)
    except Exception as e:
        logging.exception("unexpected error while mirroring %s", task.url)
        run.result.record_error(task.url, "internal", str(e))
    finally:
        run.tracker.done()


def schedule(run: MirrorRun, task: CrawlTask) -> None:
    run.tracker.add()
    try:
        run.executor.submit(_run_task, run, task)
    except RuntimeError:
        run.tracker.done()
        raise


# -------------------- Scheduler --------------------


class Mirror:
    def __init__(
        self,
        url: str,
        settings: Settings,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.target = parse_target(url, settings.output_dir)
        self._own_session = session is None
        self.session = session if session is not None else build_session(settings)

    def run(self) -> MirrorResult:
        started = time.monotonic()
        root = self.target.root_dir
        logging.info(
            "mirroring %s into %s (depth=%d, concurrency=%d)",
            self.target.start_url,
            root,
            self.settings.max_depth,
            self.settings.concurrency,
        )
        try:
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(self.target.start_url, f"{root}: {e}") from e

            with ThreadPoolExecutor(
                max_workers=max(self.settings.workers, self.settings.concurrency),
                thread_name_prefix="mirror",
            ) as pool:
                run = MirrorRun(
                    target=self.target,
                    settings=self.settings,
                    session=self.session,
                    executor=pool,
                )
                schedule(run, CrawlTask(self.target.start_url, 0))
                run.tracker.wait()
        finally:
            if self._own_session:
                self.session.close()

        result = run.result
        result.peak_in_flight = run.limiter.peak
        result.elapsed = time.monotonic() - started
        return result


def mirror_site(
    url: str, settings: Settings, session: Optional[requests.Session] = None
) -> MirrorResult:
    result = Mirror(url, settings, session).run()
    print("Mirroring complete")
    print(f"Files saved: {len(result.saved)}, errors: {len(result.errors)}")
    print(f"Root: {result.root_dir}")
    print(f"Done in: {result.elapsed:.2f}s")
    return result


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        try:
            with open(p, "rb") as f:
                return tomllib.load(f) or {}
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise RuntimeError(f"cannot read config {p}: {e}") from e
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        try:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RuntimeError(f"cannot read config {p}: {e}") from e
        if not isinstance(data, dict):
            raise RuntimeError("Top-level YAML must be a mapping")
        return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a website for offline browsing.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL to mirror")
    p.add_argument(
        "-d", "--max-depth", type=int, default=1, help="max page link depth"
    )
    p.add_argument(
        "-n",
        "--concurrency",
        type=int,
        default=5,
        help="max concurrent downloads",
    )
    p.add_argument(
        "-t", "--timeout", type=float, default=30.0, help="request timeout seconds"
    )
    p.add_argument(
        "-o", "--output", type=str, default=".", help="directory to mirror into"
    )
    p.add_argument("--workers", type=int, default=16, help="crawl worker threads")
    p.add_argument("--user-agent", type=str, default=None, help="User-Agent header")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("crawl", "http", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except RuntimeError as e:
        print(f"Config error: {e}")
        sys.exit(1)

    settings = Settings(
        max_depth=max(0, args.max_depth),
        concurrency=max(1, args.concurrency),
        timeout=max(0.1, args.timeout),
        workers=max(1, args.workers),
        output_dir=args.output,
        user_agent=args.user_agent,
        verbose=args.verbose,
    )

    logging.basicConfig(
        level=logging.DEBUG if settings.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        mirror_site(args.url, settings)
    except MirrorError as e:
        print(f"Critical error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
