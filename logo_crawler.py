import asyncio
import enum
import logging
import os
import re
import sys
import time
from dataclasses import dataclass
from typing import Optional, Union

import httpx

WINDOW_SIZE = 20
TIMEOUT = 5.0
USER_AGENT = "curl/7.79.0"

IMG_TAG_PATTERN = re.compile(r"<img[^>]*>")
ABSOLUTE_URL_PATTERN = re.compile(r"^https?://")
SCHEME_PATTERN = re.compile(r"^([^:]+)://")

LOGGER_NAME = "logo_crawler"
logger = logging.getLogger(LOGGER_NAME)
logger.addHandler(logging.NullHandler())


class LogoCrawlerError(Exception):
    """Base class for contract violations raised by this module."""


class InvalidInput(LogoCrawlerError, TypeError):
    """An argument does not have the expected shape (e.g. not a string)."""


class InvalidArgument(InvalidInput):
    """The ranker was given something that is not a sequence of tags."""


class MalformedBase(LogoCrawlerError, ValueError):
    """A protocol-relative URL was resolved against a base without a scheme."""


class ErrorKind(enum.Enum):
    NOT_OK = "not_ok"
    NOT_HTML = "not_html"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class FetchResult:
    """HTML page served for a domain and the base URL it was served from."""

    base_url: str
    body: str


@dataclass(frozen=True)
class FetchError:
    """
    Recoverable failure of a fetch.

    For UNREACHABLE errors, `cause` holds the failure of the last candidate
    URL that was tried.
    """

    kind: ErrorKind
    url: str
    detail: str = ""
    cause: Optional["FetchError"] = None

    def __str__(self):
        text = f"{self.kind.value} {self.url}"
        if self.detail:
            text += f": {self.detail}"
        if self.cause is not None:
            text += f" ({self.cause})"
        return text


FetchOutcome = Union[FetchResult, FetchError]


def extract_image_tags(html):
    """
    Return every `<img ...>` substring of `html`, in document order.

    This is a lexical scan, not a parse: a `>` inside an attribute value ends
    the tag early.
    """
    if not isinstance(html, str):
        raise InvalidInput(f"html must be a string, got {type(html).__name__}")
    return IMG_TAG_PATTERN.findall(html)


def extract_attribute(tag, name) -> Optional[str]:
    """Return the raw value of `name="value"` in `tag`, or None."""
    if not isinstance(tag, str):
        raise InvalidInput(f"tag must be a string, got {type(tag).__name__}")
    match = re.search(re.escape(name) + r'="([^"]+)"', tag, re.IGNORECASE)
    return match.group(1) if match else None


def has_attribute(tag, name) -> bool:
    """True when `name=` appears anywhere in `tag`, so `data-alt=` also counts for "alt"."""
    if not isinstance(tag, str):
        raise InvalidInput(f"tag must be a string, got {type(tag).__name__}")
    return f"{name}=" in tag


def rank_tag(tag) -> int:
    """
    Score how much an image tag looks like a logotype.

    +1 when the tag text contains "logo" (in src, class, id, alt...)
    +1 when the tag has an alt attribute, whatever its value
    """
    if not isinstance(tag, str):
        raise InvalidInput(f"tag must be a string, got {type(tag).__name__}")
    rank = 0
    if "logo" in tag:
        rank += 1
    if has_attribute(tag, "alt"):
        rank += 1
    return rank


def rank_tags(tags):
    return [(tag, rank_tag(tag)) for tag in tags]


def pick_logo(tags, log=None) -> Optional[str]:
    """
    Return the src of the image tag that looks most like a logotype.

    The first tag reaching the maximum rank wins; later tags only replace it
    with a strictly greater rank. Returns "" for an empty list and None when
    the winning tag has no src.

    When `log` is given, the rank of every tag is logged at debug level.
    """
    if not isinstance(tags, (list, tuple)):
        raise InvalidArgument(f"tags must be a list, got {type(tags).__name__}")
    if not tags:
        return ""

    ranked = rank_tags(tags)
    if log is not None and log.isEnabledFor(logging.DEBUG):
        log.debug(f"Tag ranks: {ranked}")

    best_tag = None
    best_rank = -1
    for tag, rank in ranked:
        if rank > best_rank:
            best_rank = rank
            best_tag = tag

    return extract_attribute(best_tag, "src")


def to_absolute(base_url, url) -> str:
    """
    Make `url` absolute using `base_url`.

    - "http://..." and "https://..." are returned unchanged
    - "//host/path" takes the scheme of `base_url`
    - anything else is appended to `base_url` as is

    Relative URLs are not normalized: "https://a.com/" + "/b.png" gives
    "https://a.com//b.png". Base URLs built by the crawler end with "/".
    """
    if not isinstance(base_url, str) or not isinstance(url, str):
        raise InvalidInput("base_url and url must be strings")
    if ABSOLUTE_URL_PATTERN.match(url):
        return url
    if url.startswith("//"):
        match = SCHEME_PATTERN.match(base_url)
        if match is None:
            raise MalformedBase(f"no scheme in base url {base_url!r}")
        return f"{match.group(1)}:{url}"
    return base_url + url


def base_url_of(requested_url, response):
    """
    Scheme, host and path of the last request of a redirect chain.

    Falls back to `requested_url` when the response does not expose a URL.
    """
    final = getattr(response, "url", None)
    if final is None:
        return requested_url
    path = final.raw_path.split(b"?", 1)[0].decode("ascii")
    return f"{final.scheme}://{final.netloc.decode('ascii')}{path}"


def read_domains(stream):
    """Read every line of `stream`; blank lines and duplicates are kept."""
    return [line.rstrip("\r\n") for line in stream]


class Crawler:
    """
    Asynchronous logo crawler.

    Domains are processed in windows of `window_size`: every domain of a window
    is fetched concurrently and the whole window finishes before the next one
    starts. This caps the number of simultaneous outbound connections.

    For each domain the homepage is fetched over https, then http, the <img>
    tags are ranked and the winner's src is written to `output` as a
    `domain,absolute_url` line. Failures give a `domain,` line.
    """

    class Metrics:
        """
        Simple counters for a crawl run.

        - total processed and logos found
        - failures by error kind ('not_ok', 'timeout', 'unexpected_error'...)
        """

        def __init__(self) -> None:
            self.stats = {
                "total_processed": 0,
                "logos_found": 0,
            }
            self.start_time = time.time()

        def record_success(self, has_logo=False):
            """Record a domain whose homepage was fetched and parsed."""
            self.stats["total_processed"] += 1
            if has_logo:
                self.stats["logos_found"] += 1

        def record_error(self, error_type):
            """Record a failed domain under `error_type`."""
            self.stats["total_processed"] += 1
            if error_type not in self.stats:
                self.stats[error_type] = 0
            self.stats[error_type] += 1

        def error_types(self):
            return [
                k for k in self.stats if k not in ("total_processed", "logos_found")
            ]

        def print_summary(self, log=None):
            log = log or logger
            runtime = max(time.time() - self.start_time, 1e-9)
            total = self.stats["total_processed"]
            found = self.stats["logos_found"]

            log.info(f"Processing Complete - {total} domains processed in {runtime:.1f} sec")
            if not total:
                return
            log.info(f"Logo Discovery Rate: {found}/{total} ({found/total*100:.1f}% success)")
            log.info(f"Processing Rate: {total/runtime:.1f} domains/sec")

            error_types = self.error_types()
            if error_types:
                log.info("Error Breakdown:")
                for error_type in error_types:
                    count = self.stats[error_type]
                    log.info(f"  {error_type}: {count} ({count/total*100:.1f}%)")

    def __init__(
        self,
        window_size=WINDOW_SIZE,
        timeout=TIMEOUT,
        user_agent=USER_AGENT,
        output=None,
        logger=None,
        transport=None,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.timeout = timeout
        self.user_agent = user_agent
        self.output = output if output is not None else sys.stdout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.transport = transport
        self.client = None
        self.metrics = Crawler.Metrics()

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            limits=httpx.Limits(max_connections=self.window_size),
            timeout=self.timeout,
            follow_redirects=True,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the HTTP client and log the run summary."""
        if self.client:
            await self.client.aclose()
            self.client = None
        self.metrics.print_summary(self.logger)

    async def fetch(self, url) -> FetchOutcome:
        """
        GET `url` and return its HTML body with the post-redirect base URL.

        The response is rejected when:
        - the transport fails (DNS, connection, TLS, too many redirects)
        - the whole request, redirects and body included, takes longer than
          `timeout` seconds
        - the status is outside 200-299
        - the content-type does not contain "/html"
        """
        try:
            response = await asyncio.wait_for(self.client.get(url), self.timeout)
        except asyncio.TimeoutError:
            return FetchError(ErrorKind.TIMEOUT, url, f"no response within {self.timeout}s")
        except httpx.TimeoutException as e:
            return FetchError(ErrorKind.TIMEOUT, url, str(e) or type(e).__name__)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return FetchError(ErrorKind.NETWORK, url, str(e) or type(e).__name__)

        if not 200 <= response.status_code <= 299:
            return FetchError(ErrorKind.NOT_OK, url, f"status {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "/html" not in content_type.lower():
            return FetchError(ErrorKind.NOT_HTML, url, f"content-type {content_type!r}")

        return FetchResult(base_url_of(url, response), response.text)

    async def resolve(self, domain) -> FetchOutcome:
        """
        Fetch the homepage of `domain`, trying https:// first and http:// next.

        When both fail, the UNREACHABLE error carries the http failure, the
        most useful one for sites that only serve plain http.
        """
        if not isinstance(domain, str):
            raise InvalidInput(f"domain must be a string, got {type(domain).__name__}")

        last_error = None
        for scheme in ("https", "http"):
            outcome = await self.fetch(f"{scheme}://{domain}/")
            if isinstance(outcome, FetchResult):
                return outcome
            self.logger.debug(f"Candidate failed: {outcome}")
            last_error = outcome

        return FetchError(ErrorKind.UNREACHABLE, domain, cause=last_error)

    def parse(self, base_url, html):
        """Return the absolute URL of the most logo-like image, or ""."""
        src = pick_logo(extract_image_tags(html), log=self.logger)
        logo_url = to_absolute(base_url, src) if src else ""
        self.metrics.record_success(has_logo=bool(logo_url))
        if logo_url:
            self.logger.info(f"Logo found for {base_url}: {logo_url}")
        return logo_url

    async def process_domain(self, domain):
        """
        Resolve, parse and write one row for `domain`.

        Never raises: any failure writes a row with an empty URL.
        """
        logo_url = ""
        try:
            outcome = await self.resolve(domain)
            if isinstance(outcome, FetchError):
                self.logger.info(f"Unreachable {domain}: {outcome}")
                self.metrics.record_error(outcome.cause.kind.value)
            else:
                logo_url = self.parse(outcome.base_url, outcome.body)
        except Exception as e:
            self.logger.error(f"Failed to process {domain!r}: {e!r}")
            self.metrics.record_error("unexpected_error")
            logo_url = ""

        self.write_row(domain, logo_url)
        return logo_url

    def write_row(self, domain, logo_url):
        # Fields are not quoted; domains and URLs are expected to be comma free.
        self.output.write(f"{domain},{logo_url}\n")

    async def run(self, domains):
        """Process `domains` window by window, one output row per domain."""
        domains = list(domains)
        for start in range(0, len(domains), self.window_size):
            window = domains[start:start + self.window_size]
            self.logger.debug(
                f"Window {start // self.window_size + 1}: {len(window)} domains"
            )
            await asyncio.gather(*(self.process_domain(d) for d in window))
        self.output.flush()


def configure_logging():
    """Send diagnostics to stderr when LOGO_CRAWLER_DEBUG is set."""
    if os.environ.get("LOGO_CRAWLER_DEBUG", "") in ("", "0"):
        return
    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def main():
    """
    Read domains from stdin (one per line) and write `domain,logo_url` CSV
    lines to stdout.

    The whole input is read before crawling starts. No header row is written.
    """
    configure_logging()
    # Undecodable input bytes become U+FFFD so every line still yields a row.
    if hasattr(sys.stdin, "reconfigure"):
        sys.stdin.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8")

    domains = read_domains(sys.stdin)
    if not domains:
        logger.warning("No domains provided on stdin")
        return

    async with Crawler() as crawler:
        await crawler.run(domains)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
