#!/usr/bin/env python3
"""
Sitemap to Markdown - Rendered Page Extraction from a Sitemap

This script takes a sitemap (or sitemap index) URL, resolves every page it
references, renders each page in a headless browser, extracts the main
content and writes it to one Markdown file per page.

Usage:
    python sitemap_to_markdown.py https://example.com/sitemap.xml
    python sitemap_to_markdown.py https://example.com/sitemap.xml --workers 4
"""

import sys
import argparse
import xml.etree.ElementTree as ET
import copy
import gzip
import zlib
import time
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeoutError
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import logging
import re
import os

# Third-party imports (need to be installed)
try:
    import requests
    from bs4 import BeautifulSoup
    from tqdm import tqdm
    import html2text
    from playwright.sync_api import sync_playwright, Error as PlaywrightError
except ImportError as e:
    print(f"Missing required package: {e}")
    print("Install required packages with:")
    print("pip install requests beautifulsoup4 tqdm html2text playwright")
    print("playwright install chromium")
    sys.exit(1)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logging.getLogger("playwright").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; SitemapToMarkdown/1.0)'
DEFAULT_BASE_NAME = 'default_page_name'
MARKDOWN_EXTENSION = '.md'
MAX_FILENAME_LENGTH = 100
GZIP_MAGIC = b'\x1f\x8b'
TEXT_KEY = '#text'

STATUS_WRITTEN = 'written'
STATUS_SKIPPED = 'skipped'
STATUS_LOW_CONTENT = 'low_content'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'
STATUSES = (STATUS_WRITTEN, STATUS_SKIPPED, STATUS_LOW_CONTENT, STATUS_FAILED, STATUS_CANCELLED)


class SitemapToMarkdownError(Exception):
    """Base class for errors raised by this tool."""


class SitemapError(SitemapToMarkdownError):
    """A sitemap node could not be resolved."""


class SitemapFetchError(SitemapError):
    """HTTP failure or non-2xx status while fetching a sitemap."""


class SitemapParseError(SitemapError):
    """Malformed XML or a document that is neither a urlset nor a sitemapindex."""


class PageRenderError(SitemapToMarkdownError):
    """Navigation failure or timeout while rendering a page."""


class ExtractionError(SitemapToMarkdownError):
    pass


class LowContentError(ExtractionError):
    """Extracted content is shorter than the configured minimum."""

    def __init__(self, url: str, char_count: int, min_chars: int):
        super().__init__(f"only {char_count} characters extracted from {url} (minimum {min_chars})")
        self.url = url
        self.char_count = char_count
        self.min_chars = min_chars


class Settings(NamedTuple):
    """Run configuration shared by the resolver, the pipeline and the run loop."""
    output_dir: str = 'docs'
    nav_timeout_ms: int = 60000
    min_extract_chars: int = 100
    sitemap_timeout: int = 10
    workers: int = 1
    strip_all_dots: bool = False
    dedupe: bool = False
    limit: Optional[int] = None
    run_timeout: Optional[float] = None


class ExtractedDocument(NamedTuple):
    root: Any
    char_count: int


def sanitize_url_to_filename(url: str, strip_all_dots: bool = False) -> str:
    """Map a URL to a filesystem-safe Markdown filename.

    Only the first dot is removed unless ``strip_all_dots`` is set, so
    ``https://example.com/docs/page-one`` becomes
    ``examplecom_docs_page-one.md``. Distinct URLs may map to the same name.
    """
    file_name = re.sub(r'^https?://', '', url)
    file_name = file_name.replace('/', '_')
    if strip_all_dots:
        file_name = file_name.replace('.', '')
    else:
        file_name = file_name.replace('.', '', 1)
    file_name = re.sub(r'[^a-zA-Z0-9_.-]', '', file_name)
    file_name = file_name[:MAX_FILENAME_LENGTH]

    # Don't end with a dot or underscore unless it is the only character
    if len(file_name) > 1 and file_name.endswith(('.', '_')):
        file_name = file_name[:-1]

    if not file_name:
        file_name = DEFAULT_BASE_NAME
    return file_name + MARKDOWN_EXTENSION


def _local_name(tag: str) -> str:
    return tag.split('}')[-1] if '}' in tag else tag


def _element_to_node(root: ET.Element) -> Any:
    """Convert an element to a plain string or a dict of its children.

    Leaf elements without attributes become their stripped text. Anything
    else becomes a dict with attributes under ``@name``, children under
    their local name (a list when repeated) and own text under ``#text``.
    The tree is walked with an explicit stack, so nesting depth is not
    limited by the interpreter's recursion limit.
    """
    converted: Dict[int, Any] = {}
    stack = [(root, False)]
    while stack:
        elem, expanded = stack.pop()
        children = list(elem)
        if not expanded:
            stack.append((elem, True))
            stack.extend((child, False) for child in reversed(children))
            continue

        text = (elem.text or '').strip()
        if not children and not elem.attrib:
            converted[id(elem)] = text
            continue

        node: Dict[str, Any] = {}
        for key, value in elem.attrib.items():
            node['@' + _local_name(key)] = value
        for child in children:
            key = _local_name(child.tag)
            value = converted.pop(id(child))
            if key not in node:
                node[key] = value
            elif isinstance(node[key], list):
                node[key].append(value)
            else:
                node[key] = [node[key], value]
        if text:
            node[TEXT_KEY] = text
        converted[id(elem)] = node
    return converted[id(root)]


def parse_sitemap_xml(content: bytes) -> Dict[str, Any]:
    """Parse sitemap XML into ``{root_name: node}``."""
    if content[:2] == GZIP_MAGIC:
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError, zlib.error) as e:
            raise SitemapParseError(f"Invalid gzip payload: {e}") from e
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise SitemapParseError(f"Malformed XML: {e}") from e
    return {_local_name(root.tag): _element_to_node(root)}


def _children(node: Any, key: str) -> List[Any]:
    if not isinstance(node, dict) or key not in node:
        return []
    value = node[key]
    return value if isinstance(value, list) else [value]


def extract_loc(entry: Any) -> Optional[str]:
    """Return the ``loc`` text of a url/sitemap entry, in string or object form."""
    if not isinstance(entry, dict):
        return None
    loc = entry.get('loc')
    if isinstance(loc, str) and loc:
        return loc
    if isinstance(loc, dict) and isinstance(loc.get(TEXT_KEY), str) and loc[TEXT_KEY]:
        return loc[TEXT_KEY]
    return None


def dedupe_urls(urls: List[str]) -> List[str]:
    """Drop repeated URLs, keeping first-seen order."""
    seen = set()
    unique = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


class SitemapResolver:
    """Expand a sitemap or sitemap index into a flat list of page URLs."""

    def __init__(self, timeout: int = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            session.headers.update({'User-Agent': USER_AGENT})
        self.session = session

    def resolve(self, sitemap_url: str) -> List[str]:
        """Return every page URL reachable from ``sitemap_url`` in document order.

        Never raises: a sitemap that cannot be fetched or parsed contributes
        an empty list and resolution of its siblings continues.
        """
        urls: List[str] = []
        visited = set()
        # Depth-first over an explicit stack; children are pushed in reverse
        # so page URLs come out in document order
        stack = [sitemap_url]
        while stack:
            current = stack.pop()
            if current in visited:
                logger.warning(f"Skipping already visited sitemap: {current}")
                continue
            visited.add(current)

            page_urls, child_sitemaps = self._resolve_node(current)
            urls.extend(page_urls)
            stack.extend(reversed(child_sitemaps))
        return urls

    def fetch(self, sitemap_url: str) -> bytes:
        try:
            response = self.session.get(sitemap_url, timeout=self.timeout)
        except requests.RequestException as e:
            raise SitemapFetchError(f"Failed to fetch sitemap: {e}") from e
        if not 200 <= response.status_code < 300:
            raise SitemapFetchError(f"Failed to fetch sitemap: HTTP {response.status_code}")
        return response.content

    def _resolve_node(self, sitemap_url: str) -> Tuple[List[str], List[str]]:
        """Return ``(page_urls, child_sitemap_urls)`` for one sitemap, or two empty lists on failure."""
        try:
            logger.info(f"Fetching sitemap: {sitemap_url}")
            doc = parse_sitemap_xml(self.fetch(sitemap_url))

            if 'urlset' in doc:
                urls = [loc for loc in map(extract_loc, _children(doc['urlset'], 'url')) if loc]
                logger.info(f"Found {len(urls)} URLs in {sitemap_url}")
                return urls, []

            if 'sitemapindex' in doc:
                locs = [loc for loc in map(extract_loc, _children(doc['sitemapindex'], 'sitemap')) if loc]
                logger.info(f"Found {len(locs)} sitemaps in index {sitemap_url}")
                return [], locs

            raise SitemapParseError('Invalid sitemap format. No <urlset> or <sitemapindex> found.')
        except SitemapError as e:
            logger.error(f"Error fetching or parsing sitemap {sitemap_url}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error resolving sitemap {sitemap_url}: {e}", exc_info=True)
        return [], []


class PageRenderer:
    """Render a page in headless Chromium and return the resulting HTML."""

    def __init__(self, timeout_ms: int = 60000, headless: bool = True):
        self.timeout_ms = timeout_ms
        self.headless = headless

    def render(self, url: str) -> str:
        # A fresh browser per call; sessions are never shared between pages
        with sync_playwright() as p:
            try:
                browser = p.chromium.launch(
                    headless=self.headless,
                    args=['--no-sandbox', '--disable-setuid-sandbox'],
                )
            except PlaywrightError as e:
                raise PageRenderError(f"Failed to launch browser: {e}") from e
            try:
                page = browser.new_page()
                page.goto(url, wait_until='networkidle', timeout=self.timeout_ms)
                return page.content()
            except PlaywrightError as e:
                raise PageRenderError(str(e)) from e
            finally:
                browser.close()


class ContentExtractor:
    """Pick the main content of a page and convert it to Markdown."""

    CANDIDATE_SELECTORS = [
        'article', 'main', '[role=main]', '.content', '#content', '.post', '.entry-content',
        '.page-content', '.documentation-content', '.docs-content',
    ]
    NOISE_TAGS = ['script', 'style', 'noscript', 'template']
    BOILERPLATE_TAGS = ['nav', 'header', 'footer', 'aside']

    def __init__(self, min_chars: int = 100):
        self.min_chars = min_chars

    @staticmethod
    def _text_length(tag) -> int:
        return len(' '.join(tag.get_text(' ').split()))

    def extract(self, html: str) -> ExtractedDocument:
        soup = BeautifulSoup(html, 'html.parser')

        for tag in soup.find_all(self.NOISE_TAGS):
            tag.decompose()

        candidates = []
        for selector in self.CANDIDATE_SELECTORS:
            elem = soup.select_one(selector)
            # Tags compare by content, so check identity
            if elem is not None and all(elem is not c for c in candidates):
                candidates.append(elem)

        # Fallback to body content; boilerplate is stripped from a copy so the
        # headers and footers inside article/main candidates survive
        fallback = copy.copy(soup.find('body') or soup)
        for tag in fallback.find_all(self.BOILERPLATE_TAGS):
            tag.decompose()
        candidates.append(fallback)

        best = None
        best_length = -1
        for candidate in candidates:
            length = self._text_length(candidate)
            if length >= self.min_chars:
                return ExtractedDocument(candidate, length)
            if length > best_length:
                best, best_length = candidate, length

        return ExtractedDocument(best, best_length)

    def to_markdown(self, root) -> str:
        # HTML2Text keeps parser state, so each conversion gets its own instance
        h2t = html2text.HTML2Text()
        h2t.ignore_links = False
        h2t.ignore_images = False
        h2t.ignore_emphasis = False
        h2t.body_width = 0  # Don't wrap lines
        h2t.single_line_break = True
        return self._clean_markdown(h2t.handle(str(root)))

    def _clean_markdown(self, markdown: str) -> str:
        """Clean up markdown content."""
        # Remove HTML comments first so we don't reintroduce extra blank lines later
        markdown = re.sub(r'<!--.*?-->', '', markdown, flags=re.DOTALL)

        lines = [line.rstrip() for line in markdown.split('\n')]
        markdown = '\n'.join(lines)

        # Collapse excessive blank lines (allow at most a single blank line between blocks)
        markdown = re.sub(r'\n{3,}', '\n\n', markdown)

        return markdown.strip()


class MarkdownWriter:
    """Write Markdown files into the output directory."""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def ensure_output_dir(self):
        os.makedirs(self.output_dir, exist_ok=True)

    def _lock_for(self, file_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(file_name, threading.Lock())

    def write(self, file_name: str, markdown: str) -> str:
        path = os.path.join(self.output_dir, file_name)
        with self._lock_for(file_name):
            with open(path, 'w', encoding='utf-8') as f:
                f.write(markdown)
        return path


class PagePipeline:
    """Render, extract and persist a single page."""

    def __init__(self, settings: Optional[Settings] = None, renderer: Optional[PageRenderer] = None,
                 extractor: Optional[ContentExtractor] = None, writer: Optional[MarkdownWriter] = None):
        self.settings = settings or Settings()
        self.renderer = renderer or PageRenderer(timeout_ms=self.settings.nav_timeout_ms)
        self.extractor = extractor or ContentExtractor(min_chars=self.settings.min_extract_chars)
        self.writer = writer or MarkdownWriter(self.settings.output_dir)

    def extract_markdown(self, page_url: str, html: str) -> Tuple[str, int]:
        """Return ``(markdown, char_count)`` or raise LowContentError."""
        document = self.extractor.extract(html)
        if document.char_count < self.extractor.min_chars:
            raise LowContentError(page_url, document.char_count, self.extractor.min_chars)
        return self.extractor.to_markdown(document.root), document.char_count

    def process(self, page_url: str) -> Dict[str, Any]:
        """Process one page. Only filesystem errors escape."""
        result = {
            'url': page_url,
            'status': None,
            'path': None,
            'error': None,
            'chars': 0,
        }

        try:
            html = self.renderer.render(page_url)
        except PageRenderError as e:
            logger.warning(f"Skipping {page_url} due to fetch error: {e}")
            result['status'] = STATUS_SKIPPED
            result['error'] = str(e)
            return result

        try:
            markdown, result['chars'] = self.extract_markdown(page_url, html)
        except LowContentError as e:
            logger.warning(f"Skipping {page_url}: {e}")
            result['status'] = STATUS_LOW_CONTENT
            result['chars'] = e.char_count
            result['error'] = str(e)
            return result

        file_name = sanitize_url_to_filename(page_url, strip_all_dots=self.settings.strip_all_dots)
        logger.info(f"Writing to file: {os.path.join(self.writer.output_dir, file_name)}")
        result['path'] = self.writer.write(file_name, markdown)
        result['status'] = STATUS_WRITTEN
        return result


def _empty_summary() -> Dict[str, Any]:
    summary: Dict[str, Any] = {status: 0 for status in STATUSES}
    summary['total'] = 0
    summary['results'] = []
    return summary


def _safe_process(pipeline: PagePipeline, page_url: str, position: int, total: int) -> Dict[str, Any]:
    """Run the pipeline for one URL, turning unexpected errors into a failed result."""
    logger.info(f"Processing URL: {page_url} ({position}/{total})")
    try:
        return pipeline.process(page_url)
    except OSError:
        raise
    except Exception as e:
        logger.error(f"Error processing {page_url}: {e}", exc_info=True)
        return {'url': page_url, 'status': STATUS_FAILED, 'path': None, 'error': str(e), 'chars': 0}


def _cancelled(page_url: str) -> Dict[str, Any]:
    return {'url': page_url, 'status': STATUS_CANCELLED, 'path': None,
            'error': 'run timeout reached', 'chars': 0}


def _process_sequential(urls: List[str], pipeline: PagePipeline,
                        deadline: Optional[float]) -> List[Dict[str, Any]]:
    results = []
    for index, page_url in enumerate(tqdm(urls, desc="Processing pages")):
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"Run timeout reached, cancelling {len(urls) - index} remaining URLs")
            results.extend(_cancelled(url) for url in urls[index:])
            break
        results.append(_safe_process(pipeline, page_url, index + 1, len(urls)))
    return results


def _process_parallel(urls: List[str], pipeline: PagePipeline, workers: int,
                      deadline: Optional[float]) -> List[Dict[str, Any]]:
    results: List[Optional[Dict[str, Any]]] = [None] * len(urls)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(_safe_process, pipeline, url, i + 1, len(urls)): i
            for i, url in enumerate(urls)
        }
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            try:
                for future in tqdm(as_completed(futures, timeout=timeout), total=len(urls), desc="Processing pages"):
                    # Re-raises OSError from a worker
                    results[futures[future]] = future.result()
            except FuturesTimeoutError:
                cancelled = 0
                for future, index in futures.items():
                    if future.cancel():
                        results[index] = _cancelled(urls[index])
                        cancelled += 1
                logger.warning(f"Run timeout reached, cancelled {cancelled} pending URLs")
                # Pages already rendering finish on their own navigation timeout
                for future, index in futures.items():
                    if results[index] is None:
                        results[index] = future.result()
        except OSError:
            # Filesystem errors are fatal; don't start the queued pages
            for future in futures:
                future.cancel()
            raise
    return results


def run(sitemap_url: str, settings: Optional[Settings] = None,
        resolver: Optional[SitemapResolver] = None,
        pipeline: Optional[PagePipeline] = None) -> Dict[str, Any]:
    """Resolve the sitemap and process every page URL it lists."""
    settings = settings or Settings()
    resolver = resolver or SitemapResolver(timeout=settings.sitemap_timeout)
    pipeline = pipeline or PagePipeline(settings)
    deadline = None if settings.run_timeout is None else time.monotonic() + settings.run_timeout

    logger.info(f"Sitemap URL: {sitemap_url}")
    urls = resolver.resolve(sitemap_url)
    if settings.dedupe:
        urls = dedupe_urls(urls)
    if settings.limit:
        urls = urls[:settings.limit]
        logger.info(f"Processing limited to {settings.limit} URLs")

    summary = _empty_summary()
    if not urls:
        logger.info('No URLs found in the sitemap or failed to fetch/parse sitemap.')
        return summary
    logger.info(f"Found {len(urls)} URLs in sitemap.")

    pipeline.writer.ensure_output_dir()

    if settings.workers > 1:
        results = _process_parallel(urls, pipeline, settings.workers, deadline)
    else:
        results = _process_sequential(urls, pipeline, deadline)

    summary['total'] = len(results)
    summary['results'] = results
    for result in results:
        summary[result['status']] += 1

    logger.info(
        f"All processing finished. Attempted {summary['total']} URLs: "
        f"{summary[STATUS_WRITTEN]} written, {summary[STATUS_SKIPPED]} skipped, "
        f"{summary[STATUS_LOW_CONTENT]} low content, {summary[STATUS_FAILED]} failed, "
        f"{summary[STATUS_CANCELLED]} cancelled"
    )
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Render every page listed in a sitemap and save its main content as Markdown'
    )
    parser.add_argument(
        'sitemap_url',
        nargs='?',
        default=None,
        help='Sitemap or sitemap index URL (e.g., https://example.com/sitemap.xml)'
    )
    parser.add_argument(
        '--output-dir',
        default='docs',
        help='Directory for the Markdown files (default: docs)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        default=60,
        help='Page navigation timeout in seconds (default: 60)'
    )
    parser.add_argument(
        '--min-chars',
        type=int,
        default=100,
        help='Minimum characters of extracted content to write a page (default: 100)'
    )
    parser.add_argument(
        '--sitemap-timeout',
        type=int,
        default=10,
        help='Sitemap request timeout in seconds (default: 10)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=1,
        help='Number of pages rendered concurrently (default: 1)'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=None,
        help='Limit number of pages to process'
    )
    parser.add_argument(
        '--dedupe',
        action='store_true',
        help='Process each page URL only once even if several sitemaps list it'
    )
    parser.add_argument(
        '--strip-all-dots',
        action='store_true',
        help='Remove every dot from generated filenames instead of only the first one'
    )
    parser.add_argument(
        '--run-timeout',
        type=float,
        default=None,
        help='Stop starting new pages after this many seconds'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        output_dir=args.output_dir,
        nav_timeout_ms=int(args.timeout * 1000),
        min_extract_chars=args.min_chars,
        sitemap_timeout=args.sitemap_timeout,
        workers=max(1, args.workers),
        strip_all_dots=args.strip_all_dots,
        dedupe=args.dedupe,
        limit=args.limit,
        run_timeout=args.run_timeout,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.sitemap_url is None:
        print('Please provide a sitemap.xml URL as an argument.', file=sys.stderr)
        parser.print_usage()
        return 1

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = settings_from_args(args)

    try:
        print(f"\n🔍 Processing sitemap: {args.sitemap_url}")
        print(f"📁 Output directory: {settings.output_dir}")

        summary = run(args.sitemap_url, settings)

        if summary['total'] == 0:
            print("\n⚠️ No URLs found in the sitemap or failed to fetch/parse sitemap.")
            return 0

        print(f"\n✅ All processing finished!")
        print(f"📊 Summary:")
        print(f"   - Attempted: {summary['total']}")
        print(f"   - Written: {summary[STATUS_WRITTEN]}")
        print(f"   - Skipped (render errors): {summary[STATUS_SKIPPED]}")
        print(f"   - Skipped (low content): {summary[STATUS_LOW_CONTENT]}")
        print(f"   - Failed: {summary[STATUS_FAILED]}")
        if summary[STATUS_CANCELLED]:
            print(f"   - Cancelled: {summary[STATUS_CANCELLED]}")
        print(f"📁 Output saved to: {settings.output_dir}")

    except KeyboardInterrupt:
        print("\n⚠️ Processing interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        print(f"\n❌ Error: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
