#!/usr/bin/python3
"""
nginx Allow-list Generator

This module builds an nginx allow-list configuration from remote IP range lists.
Sources are fetched in parallel, merged with a custom allow-list and written
out followed by a trailing ``deny all;`` rule.
"""

import argparse
import logging
import os
import stat
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import requests


logger = logging.getLogger(__name__)


class AllowlistConfig:
    """Configuration constants for the allow-list generator."""

    # Remote IP range lists
    SOURCE_URLS = (
        'https://www.cloudflare.com/ips-v4',
        'https://www.cloudflare.com/ips-v6',
        'https://uptimerobot.com/inc/files/ips/IPv4.txt',
        'https://uptimerobot.com/inc/files/ips/IPv6.txt',
    )

    # Operator supplied ranges, always emitted first
    CUSTOM_ALLOW_LIST = (
        '192.168.50.0/24',
    )

    # Output
    OUTPUT_FILE_NAME = 'allow-cloudflare-only.conf'
    OUTPUT_DIRS = {
        'linux': '/etc/nginx/conf/',
        'windows': 'C:/nginx/conf/',
    }
    OUTPUT_DIR_ENV = 'NGINX_ALLOWLIST_DIR'
    LOG_FILE = 'allowlist.log'

    # Timeouts and limits
    REQUEST_TIMEOUT = 30
    USER_AGENT = 'nginx-Allowlist-Generator/1.0'


class AllowlistGeneratorError(Exception):
    """Base exception for allow-list generation errors."""
    pass


class SourceFetchError(AllowlistGeneratorError):
    """Exception raised when a source cannot be fetched or read."""
    pass


class OutputPathError(AllowlistGeneratorError):
    """Exception raised when the output location cannot be resolved or created."""
    pass


class UnsupportedPlatformError(OutputPathError):
    """Exception raised when no output directory is known for the platform."""
    pass


class OutputWriteError(AllowlistGeneratorError):
    """Exception raised when the configuration file cannot be written."""
    pass


class AllowFileError(AllowlistGeneratorError):
    """Exception raised when a custom allow-list file cannot be decoded."""
    pass


class AddressFamily(Enum):
    """Address family a source's lines are filed under."""

    IPV4 = 'IPv4'
    IPV6 = 'IPv6'


@dataclass(frozen=True)
class Source:
    """A remote plain-text IP range list and the family its lines belong to."""

    url: str
    family: AddressFamily

    @classmethod
    def from_url(cls, url: str) -> 'Source':
        """Build a source whose family is guessed from a ``v4`` marker in the URL."""
        family = AddressFamily.IPV4 if 'v4' in url.lower() else AddressFamily.IPV6
        return cls(url=url, family=family)


@dataclass(frozen=True)
class SourceRegistry:
    """Immutable set of sources and custom ranges for one run."""

    sources: Tuple[Source, ...] = ()
    custom_allow_list: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'sources', tuple(self.sources))
        object.__setattr__(self, 'custom_allow_list', tuple(self.custom_allow_list))

    @property
    def urls(self) -> List[str]:
        return [source.url for source in self.sources]

    @classmethod
    def default(cls) -> 'SourceRegistry':
        """Registry built from the constants in :class:`AllowlistConfig`."""
        return cls(
            sources=tuple(Source.from_url(url) for url in AllowlistConfig.SOURCE_URLS),
            custom_allow_list=AllowlistConfig.CUSTOM_ALLOW_LIST,
        )

    def with_custom_allow_list(self, entries: Iterable[str]) -> 'SourceRegistry':
        """Return a copy with ``entries`` appended to the custom allow-list."""
        return replace(self, custom_allow_list=self.custom_allow_list + tuple(entries))


def load_custom_allow_list(path: str) -> List[str]:
    """
    Load additional custom ranges from a file.

    One entry per line; blank lines and lines starting with ``#`` or ``;``
    are skipped. Entries are not validated.

    Raises:
        AllowFileError: If the file is not valid UTF-8
    """
    entries = []
    with open(path, 'r', encoding='utf-8') as f:
        try:
            for line in f:
                line = line.strip()
                if not line or line.startswith(('#', ';')):
                    continue
                entries.append(line)
        except UnicodeDecodeError as e:
            raise AllowFileError(f"Could not decode allow-list file {path}: {e}") from e
    logger.info(f"Loaded {len(entries)} custom allow-list entries from {path}")
    return entries


def split_lines(text: str) -> List[str]:
    """
    Split a response body into lines.

    Only the empty element left by a final newline is dropped; a trailing
    carriage return on each line is removed, everything else is kept as is.
    """
    lines = [line[:-1] if line.endswith('\r') else line for line in text.split('\n')]
    if lines and lines[-1] == '':
        lines.pop()
    return lines


def create_session() -> requests.Session:
    """Create a configured requests session."""
    session = requests.Session()
    session.headers.update({'User-Agent': AllowlistConfig.USER_AGENT})
    return session


class SourceFetcher:
    """Retrieves a single source and turns its body into a line batch."""

    def __init__(self, session_factory: Callable[[], requests.Session] = create_session,
                 timeout: float = AllowlistConfig.REQUEST_TIMEOUT):
        self.session_factory = session_factory
        self.timeout = timeout

    def _fetch_url(self, url: str) -> str:
        """
        Fetch content from a URL.

        Returns:
            The decoded response body

        Raises:
            SourceFetchError: On transport errors, non-2xx statuses or an
                undecodable body
        """
        session = self.session_factory()
        try:
            logger.info(f"Fetching URL: {url}")
            start_time = time.time()

            response = session.get(url, timeout=self.timeout)
            response.raise_for_status()
            if not 200 <= response.status_code < 300:
                raise SourceFetchError(f"Error fetching {url}: unexpected status {response.status_code}")
            text = response.content.decode('utf-8')

            elapsed = time.time() - start_time
            logger.info(
                f"Successfully fetched {url}, "
                f"response size: {len(response.content)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
            return text

        except requests.RequestException as e:
            raise SourceFetchError(f"Error fetching {url}: {e}") from e
        except UnicodeDecodeError as e:
            raise SourceFetchError(f"Error reading response from {url}: {e}") from e
        finally:
            session.close()

    def fetch(self, source: Source) -> Optional[List[str]]:
        """
        Fetch one source.

        Returns:
            The source's lines, or None when the source failed
        """
        try:
            data = self._fetch_url(source.url)
        except SourceFetchError as e:
            logger.warning(f"{e}; continuing without {source.url}")
            return None

        batch = split_lines(data)
        if not batch:
            logger.warning(f"{source.url} returned no lines")
        logger.info(f"{source.url}: {len(batch)} {source.family.value} entries found")
        return batch


class Aggregator:
    """Shared accumulation point for line batches, one bucket per family."""

    def __init__(self):
        self._lock = threading.Lock()
        self._buckets: Dict[AddressFamily, List[str]] = {family: [] for family in AddressFamily}

    def contribute(self, family: AddressFamily, batch: List[str]) -> None:
        """Append a whole batch to the bucket for ``family``."""
        with self._lock:
            self._buckets[family].extend(batch)

    def buckets(self) -> Tuple[List[str], List[str]]:
        """Return copies of the (IPv4, IPv6) buckets."""
        with self._lock:
            return list(self._buckets[AddressFamily.IPV4]), list(self._buckets[AddressFamily.IPV6])


class Coordinator:
    """
    Runs one fetch per source in parallel and collects the results.

    Lines from one source keep their order, but batches from different
    sources land in whatever order their fetches complete.
    """

    def __init__(self, registry: SourceRegistry, fetcher: Optional[SourceFetcher] = None):
        self.registry = registry
        self.fetcher = fetcher or SourceFetcher()

    def _collect_source(self, source: Source, aggregator: Aggregator) -> bool:
        batch = self.fetcher.fetch(source)
        if batch is None:
            return False
        aggregator.contribute(source.family, batch)
        return True

    def collect(self) -> Tuple[List[str], List[str]]:
        """
        Fetch every source and wait for all of them to finish.

        Returns:
            Tuple of (ipv4_list, ipv6_list)
        """
        aggregator = Aggregator()
        sources = self.registry.sources
        if not sources:
            logger.warning("No sources configured")
            return aggregator.buckets()

        logger.info(f"Fetching {len(sources)} sources")
        with ThreadPoolExecutor(max_workers=len(sources)) as executor:
            futures = {
                executor.submit(self._collect_source, source, aggregator): source
                for source in sources
            }
            wait(futures)

        succeeded = 0
        for future, source in futures.items():
            try:
                if future.result():
                    succeeded += 1
            except Exception as e:
                logger.error(f"Unexpected error processing {source.url}: {e}")

        ipv4_list, ipv6_list = aggregator.buckets()
        if not succeeded:
            logger.warning("All sources failed, writing custom allow-list only")
        logger.info(
            f"{succeeded}/{len(sources)} sources fetched, "
            f"collected {len(ipv4_list)} IPv4 and {len(ipv6_list)} IPv6 entries"
        )
        return ipv4_list, ipv6_list


def _target_mode(path: Path) -> int:
    """Permission bits for the written file: the existing file's, else 0666 minus the umask."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


class ConfigWriter:
    """Serializes the merged lists into an nginx configuration file."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def render(self, registry: SourceRegistry, ipv4_list: List[str], ipv6_list: List[str]) -> str:
        lines = [f"# This file was automatically generated on: {self.clock()}"]
        lines.append("# This file was automatically generated from the following sources:")
        lines.extend(f"# {url}" for url in registry.urls)

        sections = (
            ("User defined list", registry.custom_allow_list),
            ("IPv4", ipv4_list),
            ("IPv6", ipv6_list),
        )
        for title, entries in sections:
            lines.append("")
            lines.append(f"# {title}")
            lines.extend(f"allow {entry};" for entry in entries)

        lines.append("")
        lines.append("# Deny all remaining ips")
        lines.append("deny all;")
        return "\n".join(lines)

    def write(self, path: Path, registry: SourceRegistry,
              ipv4_list: List[str], ipv6_list: List[str]) -> Path:
        """
        Write the configuration to ``path``, replacing any existing file.

        The content goes to a temporary file in the same directory first, so
        the target is either the previous file or the complete new one.

        Raises:
            OutputWriteError: If the file cannot be created or written
        """
        path = Path(path)
        content = self.render(registry, ipv4_list, ipv6_list)
        temp_name = None
        replaced = False
        try:
            mode = _target_mode(path)
            with tempfile.NamedTemporaryFile(
                mode='w', encoding='utf-8', newline='\n', dir=path.parent,
                prefix=f".{path.name}.", suffix='.tmp', delete=False
            ) as temp_file:
                temp_name = temp_file.name
                temp_file.write(content)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            # mkstemp creates 0600 files
            os.chmod(temp_name, mode)
            os.replace(temp_name, path)
            replaced = True
        except OSError as e:
            error_msg = f"Failed to write {path}: {e}"
            logger.error(error_msg)
            raise OutputWriteError(error_msg) from e
        finally:
            if not replaced and temp_name and os.path.exists(temp_name):
                os.remove(temp_name)

        logger.info(
            f"Wrote {path} with {len(registry.custom_allow_list)} custom, "
            f"{len(ipv4_list)} IPv4 and {len(ipv6_list)} IPv6 entries"
        )
        return path


def resolve_output_dir(platform: Optional[str] = None, override: Optional[str] = None) -> Path:
    """
    Resolve the directory the configuration is written to.

    An explicit override, then the ``NGINX_ALLOWLIST_DIR`` environment
    variable, then the per-platform default is used.

    Raises:
        UnsupportedPlatformError: If there is no default for the platform
    """
    if override:
        return Path(override)

    env_dir = os.getenv(AllowlistConfig.OUTPUT_DIR_ENV)
    if env_dir:
        return Path(env_dir.strip())

    platform = platform or sys.platform
    if platform.startswith('linux'):
        key = 'linux'
    elif platform.startswith(('win32', 'cygwin', 'windows')):
        key = 'windows'
    else:
        raise UnsupportedPlatformError(f"Unsupported platform: {platform}")
    return Path(AllowlistConfig.OUTPUT_DIRS[key])


def ensure_output_dir(path: Path) -> Path:
    """Create the output directory if it does not exist yet."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputPathError(f"Failed to create directory {path}: {e}") from e
    return path


class AllowlistGenerator:
    """Main class for generating the nginx allow-list."""

    def __init__(self, registry: Optional[SourceRegistry] = None, output_dir: Optional[str] = None,
                 output_file: str = AllowlistConfig.OUTPUT_FILE_NAME, dry_run: bool = False,
                 timeout: float = AllowlistConfig.REQUEST_TIMEOUT,
                 fetcher: Optional[SourceFetcher] = None, writer: Optional[ConfigWriter] = None,
                 platform: Optional[str] = None):
        """
        Initialize the allow-list generator.

        Args:
            registry: Sources and custom ranges (default: built-in lists)
            output_dir: Directory override (default: per-platform location)
            output_file: Name of the generated file
            dry_run: If True, only show what would be written
            timeout: Per-source request timeout in seconds
            fetcher: Optional fetcher, mainly for tests
            writer: Optional writer, mainly for tests
            platform: Platform name override for directory resolution
        """
        self.registry = registry or SourceRegistry.default()
        self.output_dir = output_dir
        self.output_file = output_file
        self.dry_run = dry_run
        self.platform = platform
        self.fetcher = fetcher or SourceFetcher(timeout=timeout)
        self.writer = writer or ConfigWriter()

        if self.dry_run:
            logger.info("=== DRY RUN MODE - No file will be written ===")

    def _prepare_output_path(self) -> Path:
        output_dir = resolve_output_dir(self.platform, self.output_dir)
        if self.dry_run:
            logger.info(f"DRY RUN: Would write to {output_dir / self.output_file}")
        else:
            ensure_output_dir(output_dir)
        return output_dir / self.output_file

    def run(self) -> Path:
        """
        Main execution method.

        Returns:
            Path of the generated configuration file
        """
        logger.info("=== Starting nginx allow-list generation ===")

        # Resolve the target before any network I/O
        output_path = self._prepare_output_path()

        ipv4_list, ipv6_list = Coordinator(self.registry, self.fetcher).collect()

        if self.dry_run:
            preview = self.writer.render(self.registry, ipv4_list, ipv6_list)
            logger.info(f"DRY RUN: Would write {len(ipv4_list)} IPv4 and {len(ipv6_list)} IPv6 entries")
            logger.info(f"DRY RUN: File preview:\n{preview[:500]}...")
        else:
            self.writer.write(output_path, self.registry, ipv4_list, ipv6_list)

        logger.info("=== Allow-list generation completed successfully ===")
        return output_path


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging with appropriate level and handlers."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Generate an nginx allow-list from remote IP range lists',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Generate allow-list in the platform default directory
  %(prog)s --dry-run                        # Show what would be written
  %(prog)s --output-dir /tmp/nginx          # Write to a custom directory
  %(prog)s --allow-file /path/to/allow.txt  # Add custom ranges from a file
        """
    )
    parser.add_argument(
        '--output-dir',
        type=str,
        help=f'Output directory (default: ${AllowlistConfig.OUTPUT_DIR_ENV} or per-platform location)'
    )
    parser.add_argument(
        '--output-file',
        type=str,
        default=AllowlistConfig.OUTPUT_FILE_NAME,
        help=f'Output file name (default: {AllowlistConfig.OUTPUT_FILE_NAME})'
    )
    parser.add_argument(
        '--allow-file',
        type=str,
        help='File with additional custom ranges, one per line'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        default=AllowlistConfig.REQUEST_TIMEOUT,
        help=f'Per-source request timeout in seconds (default: {AllowlistConfig.REQUEST_TIMEOUT})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be done without writing the file'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help=f'Also log to this file (e.g. {AllowlistConfig.LOG_FILE})'
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        registry = SourceRegistry.default()
        if args.allow_file:
            registry = registry.with_custom_allow_list(load_custom_allow_list(args.allow_file))

        generator = AllowlistGenerator(
            registry=registry,
            output_dir=args.output_dir,
            output_file=args.output_file,
            dry_run=args.dry_run,
            timeout=args.timeout,
        )
        output_path = generator.run()
        if not args.dry_run:
            print(f"File written successfully: {output_path}")
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
