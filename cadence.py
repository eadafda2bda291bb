#!/usr/bin/env python3
"""
git-cadence - Author and time aware analytics over a git commit history

Walks the ancestry of a revision once and feeds every commit, together with
the file-level changes it introduced, into a set of independent aggregators:

- Churn: lines added/removed per author or per file
- Commit frequency: commits per day and ISO week, active days per author
- Commit size: files and lines touched per commit (min/max/mean/median/percentiles)
- Frecency: files ranked by how recently and how often they changed
- Ownership: share of touches per author, grouped by directory
- Streaks: longest run of consecutive commit days per author
- Time of day: histogram of author-local commit hours
- Hours: estimated time spent, from the gaps between an author's commits

All repository access goes through GitBackend, a thin wrapper around the
`git` executable. Rename detection, line counting and object storage are
git's job; this module only walks, normalizes and aggregates.

Version: 1.0.0
"""

import cProfile
import hashlib
import io
import json
import math
import os
import pstats
import re
import subprocess
import sys
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

SECONDS_PER_DAY = 86_400

CONFIG_FILE_NAMES = [
    ".git-cadence.yaml",
    ".git-cadence.yml",
    ".git-cadence.json",
]


# ============================================================================
# ERRORS
# ============================================================================


class CadenceError(Exception):
    """Base class for every error raised by git-cadence"""


class UnresolvableRevision(CadenceError):
    """A revision spec does not name a commit in the repository"""

    def __init__(self, spec: str, detail: str = ""):
        self.spec = spec
        message = f"Cannot resolve revision '{spec}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CorruptHistory(CadenceError):
    """The commit graph could not be read; the walk is aborted"""


class InvalidConfiguration(CadenceError, ValueError):
    """An aggregator option is out of range"""


class BackendError(CadenceError):
    """A single object or diff could not be read; callers degrade locally"""


# ============================================================================
# DATA MODEL
# ============================================================================


def _tzinfo(offset_seconds: int) -> timezone:
    # git accepts offsets that datetime cannot represent
    if abs(offset_seconds) >= SECONDS_PER_DAY:
        return timezone.utc
    return timezone(timedelta(seconds=offset_seconds))


@dataclass(frozen=True)
class CommitMeta:
    """Commit metadata as recorded by git. Immutable once loaded."""

    id: str
    tree: str
    parents: Tuple[str, ...]
    author_name: str
    author_email: str
    author_time: int
    author_offset: int = 0
    # committer timestamp; differs from author_time after a rebase or cherry-pick
    commit_time: int = 0

    @property
    def identity(self) -> str:
        return f"{self.author_name} <{self.author_email}>"

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def is_root(self) -> bool:
        return not self.parents

    @property
    def local_datetime(self) -> datetime:
        """Author timestamp in the author's own recorded UTC offset"""
        return datetime.fromtimestamp(self.author_time, _tzinfo(self.author_offset))

    @property
    def local_date(self) -> date:
        return self.local_datetime.date()


@dataclass(frozen=True)
class Addition:
    path: str
    new_id: str
    mode: int

    @property
    def location(self) -> str:
        return self.path


@dataclass(frozen=True)
class Deletion:
    path: str
    old_id: str
    mode: int

    @property
    def location(self) -> str:
        return self.path


@dataclass(frozen=True)
class Modification:
    path: str
    old_id: str
    new_id: str
    old_mode: int
    new_mode: int

    @property
    def location(self) -> str:
        return self.path


@dataclass(frozen=True)
class Rewrite:
    """A rename, with or without content changes"""

    old_path: str
    new_path: str
    old_id: str
    new_id: str
    old_mode: int = 0o100644
    new_mode: int = 0o100644

    @property
    def location(self) -> str:
        return self.new_path


Change = Union[Addition, Deletion, Modification, Rewrite]


@dataclass(frozen=True)
class WalkRange:
    start: str
    since: Optional[str] = None


@dataclass(frozen=True)
class DiffStats:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


def is_blob_mode(mode: int) -> bool:
    """True for regular files (100644/100755), False for trees, links and submodules"""
    return (mode & 0o170000) == 0o100000


# ============================================================================
# HELPERS
# ============================================================================


def author_matches(commit: CommitMeta, pattern: Optional[str]) -> bool:
    """Case-insensitive substring match against author name or email"""
    if not pattern:
        return True
    pattern = pattern.lower()
    return (
        pattern in commit.author_name.lower() or pattern in commit.author_email.lower()
    )


def count_lines(data: bytes) -> int:
    """Count lines the way `wc -l` would, plus a trailing unterminated line"""
    if not data:
        return 0
    lines = data.count(b"\n")
    if not data.endswith(b"\n"):
        lines += 1
    return lines


def parse_offset(offset: str) -> int:
    """Convert a git '+hhmm' / '-hhmm' offset into seconds east of UTC"""
    sign = -1 if offset.startswith("-") else 1
    digits = offset.lstrip("+-")
    return sign * (int(digits[:2]) * 3600 + int(digits[2:4]) * 60)


def iso_week_label(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def median(values: Sequence[float]) -> float:
    """Median after a full sort; mean of the two middle values for even lengths"""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def percentile_of_sorted(values: Sequence[int], pct: float) -> Optional[int]:
    """
    Linear-interpolated percentile of an ascending sequence.

    The rank is pct/100 * (n - 1); the result is rounded to the nearest
    integer. A single sample or pct == 100 returns the last value.
    """
    if not values:
        return None
    if not 0.0 <= pct <= 100.0:
        raise InvalidConfiguration(f"percentile {pct} out of range 0..=100")
    if pct == 100.0 or len(values) == 1:
        return values[-1]
    rank = (pct / 100.0) * (len(values) - 1)
    lower = math.floor(rank)
    fraction = rank - lower
    lo = values[lower]
    hi = values[lower + 1]
    return int(round(lo + (hi - lo) * fraction))


def longest_streak(days: Sequence[date]) -> int:
    longest = 0
    current = 0
    previous = None
    for day in sorted(set(days)):
        if previous is not None and day - previous == timedelta(days=1):
            current += 1
        else:
            current = 1
        longest = max(longest, current)
        previous = day
    return longest


def ownership_bucket(path: str, depth: int) -> str:
    """Leading `depth` segments of a path, or '.' when it is too shallow"""
    segments = path.split("/")
    if depth == 0 or len(segments) < 2 or len(segments) < depth:
        return "."
    return "/".join(segments[:depth])


def hour_bucket(hour: int, bins: int) -> int:
    return hour * bins // 24


def bucket_bounds(bins: int) -> List[Tuple[int, int]]:
    """
    Inclusive hour ranges for each bucket, derived by inverting hour_bucket
    with ceiling division so displayed ranges match actual membership.
    """
    bounds = []
    for index in range(bins):
        start = -(-(index * 24) // bins)
        end = -(-((index + 1) * 24) // bins) - 1
        if index == bins - 1:
            end = 23
        bounds.append((start, end))
    return bounds


# ============================================================================
# PERFORMANCE INSTRUMENTATION
# ============================================================================


class MemoryMonitor:
    """Monitor memory usage and enforce limits"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        """Get current memory usage in MB"""
        process = psutil.Process(os.getpid())
        memory_mb = process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB"
            )

        return memory_mb

    def get_peak(self) -> float:
        """Get peak memory usage"""
        return self.peak_mb


class ProfilingContext:
    """Context manager for performance profiling"""

    def __init__(self, enabled: bool = False, output_path: Optional[str] = None):
        self.enabled = enabled
        self.output_path = output_path
        self.profiler = None

    def __enter__(self):
        if self.enabled:
            self.profiler = cProfile.Profile()
            self.profiler.enable()
        return self

    def __exit__(self, *args):
        if self.enabled and self.profiler:
            self.profiler.disable()

            if self.output_path:
                self.profiler.dump_stats(self.output_path)

            s = io.StringIO()
            ps = pstats.Stats(self.profiler, stream=s)
            ps.strip_dirs()
            ps.sort_stats("cumulative")
            ps.print_stats(20)
            print(f"\n{'='*70}", file=sys.stderr)
            print(
                "PERFORMANCE PROFILE (Top 20 functions by cumulative time)",
                file=sys.stderr,
            )
            print(f"{'='*70}", file=sys.stderr)
            print(s.getvalue(), file=sys.stderr)


@dataclass
class WalkMetrics:
    """Counters collected during one walk"""

    commits_walked: int = 0
    commits_diffed: int = 0
    changes_extracted: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    aggregator_times: Dict[str, float] = field(default_factory=dict)
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "commits_walked": self.commits_walked,
            "commits_diffed": self.commits_diffed,
            "changes_extracted": self.changes_extracted,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "aggregator_times": {
                name: round(seconds, 4)
                for name, seconds in self.aggregator_times.items()
            },
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.
    Supports .git-cadence.yaml, .git-cadence.yml and .git-cadence.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            if file_ext in [".yaml", ".yml"]:
                data = yaml.safe_load(f)
            elif file_ext == ".json":
                data = json.load(f)
            else:
                raise InvalidConfiguration(
                    f"Unsupported config file format: {file_ext}"
                )
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise InvalidConfiguration(f"Cannot parse {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Configuration root must be a mapping: {config_path}")
    return data


def find_config_file(repo_path: str) -> Optional[str]:
    """Auto-discover a configuration file in the repository or current directory"""
    for search_dir in [repo_path, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).replace("-", "_"): v for k, v in data.items()}


class ConfigResolver:
    """
    Resolve configuration with precedence:
    CLI > config file command section > config file top level > defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        command: Optional[str],
        repo_path: str,
        reporter: Optional["ProgressReporter"] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.section = {}
        self.config_path = config_path

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                    if reporter:
                        reporter.info(f"Auto-discovered configuration: {auto_path}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    if reporter:
                        reporter.warning(f"Found config file but failed to load: {e}")

        self.config = _normalize_keys(self.config)

        # A command section, e.g. `frecency: {age-exponent: 1.5}`
        if command:
            section = self.config.get(command.replace("-", "_"))
            if isinstance(section, dict):
                self.section = _normalize_keys(section)

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.section:
            return self.section[key]
        if key in self.config and not isinstance(self.config[key], dict):
            return self.config[key]
        return default


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    User-facing progress and diagnostics.
    Everything goes to stderr so that stdout carries only the report.
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}
        self.warnings = []

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _emit(self, text: str):
        print(text, file=sys.stderr)

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        self.stage_times[stage_name] = time.time()
        if self.quiet or not self.verbose:
            return

        separator = self._colorize("=" * 70, Fore.CYAN)
        self._emit(f"\n{separator}")
        self._emit(self._colorize(stage_name, Fore.BLUE + Style.BRIGHT))
        if message:
            self._emit(f"   {message}")
        self._emit(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a processing stage"""
        if self.quiet or not self.verbose:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        self._emit(
            self._colorize(
                f"{stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
            )
        )
        if stats:
            for key, value in stats.items():
                self._emit(f"   {key}: {value}")

    def create_progress_bar(
        self, total: Optional[int], desc: str = "Walking history"
    ) -> Optional[tqdm]:
        """Progress bar with ETA over the commit walk"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" commits",
            ncols=100,
            leave=False,
            file=sys.stderr,
        )

    def info(self, message: str):
        """Display informational message"""
        if not self.quiet:
            self._emit(f"{self._colorize('info: ', Fore.BLUE)}{message}")

    def warning(self, message: str):
        """Display warning message"""
        self.warnings.append(message)
        if not self.quiet:
            self._emit(
                f"{self._colorize('warning: ', Fore.YELLOW + Style.BRIGHT)}{message}"
            )

    def error(self, message: str):
        """Display error message (always shown)"""
        self._emit(self._colorize(f"error: {message}", Fore.RED + Style.BRIGHT))

    def success(self, message: str):
        """Display success message"""
        if not self.quiet:
            self._emit(self._colorize(message, Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        self._emit(f"\n{separator}")
        self._emit(self._colorize("ANALYSIS SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        self._emit(separator)
        for key, value in stats.items():
            self._emit(f"   {key}: {value}")
        self._emit(self._colorize(f"\nTotal time: {elapsed:.2f}s", Fore.YELLOW))
        self._emit(f"{separator}\n")


# ============================================================================
# GIT BACKEND
# ============================================================================


_SIGNATURE_RE = re.compile(
    r"^(?P<name>.*?)\s*<(?P<email>[^>]*)>\s+(?P<time>-?\d+)\s+(?P<offset>[+-]\d{4})\s*$"
)

_SHORTSTAT_RE = {
    "files_changed": re.compile(r"(\d+) files? changed"),
    "lines_added": re.compile(r"(\d+) insertions?\(\+\)"),
    "lines_removed": re.compile(r"(\d+) deletions?\(-\)"),
}


def parse_commit(commit_id: str, data: bytes) -> CommitMeta:
    """Parse a raw commit object as printed by `git cat-file commit`"""
    text = data.decode("utf-8", errors="replace")
    header = text.split("\n\n", 1)[0]

    tree = None
    parents = []
    author = None
    committer = None
    for line in header.split("\n"):
        if line.startswith(" "):
            # continuation of a multi-line header (gpgsig, mergetag)
            continue
        key, _, value = line.partition(" ")
        if key == "tree":
            tree = value.strip()
        elif key == "parent":
            parents.append(value.strip())
        elif key == "author" and author is None:
            author = value
        elif key == "committer" and committer is None:
            committer = value

    if tree is None or author is None or committer is None:
        raise CorruptHistory(f"Malformed commit object {commit_id}")

    match = _SIGNATURE_RE.match(author)
    if not match:
        raise CorruptHistory(f"Malformed author line in commit {commit_id}: {author!r}")
    committed = _SIGNATURE_RE.match(committer)
    if not committed:
        raise CorruptHistory(
            f"Malformed committer line in commit {commit_id}: {committer!r}"
        )

    return CommitMeta(
        id=commit_id,
        tree=tree,
        parents=tuple(parents),
        author_name=match.group("name"),
        author_email=match.group("email"),
        author_time=int(match.group("time")),
        author_offset=parse_offset(match.group("offset")),
        commit_time=int(committed.group("time")),
    )


def parse_raw_diff(data: bytes) -> List[Change]:
    """
    Parse `git diff-tree -r -z -M --no-abbrev` raw output into changes.

    Records look like ":100644 100644 <old> <new> M\\0path\\0", renames carry
    two paths (":... R087\\0old\\0new\\0").
    """
    tokens = data.decode("utf-8", errors="replace").split("\0")
    changes: List[Change] = []
    i = 0
    while i < len(tokens):
        meta = tokens[i]
        if not meta.startswith(":"):
            i += 1
            continue
        old_mode, new_mode, old_id, new_id, status = meta[1:].split(" ")[:5]
        old_mode, new_mode = int(old_mode, 8), int(new_mode, 8)
        kind = status[:1]

        if kind in ("R", "C"):
            old_path, new_path = tokens[i + 1], tokens[i + 2]
            i += 3
            if kind == "R":
                changes.append(
                    Rewrite(old_path, new_path, old_id, new_id, old_mode, new_mode)
                )
            else:
                changes.append(Addition(new_path, new_id, new_mode))
            continue

        path = tokens[i + 1]
        i += 2
        if kind == "A":
            changes.append(Addition(path, new_id, new_mode))
        elif kind == "D":
            changes.append(Deletion(path, old_id, old_mode))
        elif kind in ("M", "T"):
            changes.append(Modification(path, old_id, new_id, old_mode, new_mode))

    return changes


class _CatFile:
    """A long-running `git cat-file --batch` or `--batch-check` process"""

    def __init__(self, repo_path: str, with_content: bool):
        self.with_content = with_content
        mode = "--batch" if with_content else "--batch-check"
        self.process = subprocess.Popen(
            ["git", "-C", repo_path, "cat-file", mode],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )

    def query(self, object_id: str) -> Tuple[str, int, Optional[bytes]]:
        try:
            self.process.stdin.write(object_id.encode("ascii") + b"\n")
            self.process.stdin.flush()
        except (BrokenPipeError, UnicodeEncodeError) as e:
            raise BackendError(f"cat-file rejected {object_id!r}: {e}") from e

        header = self.process.stdout.readline()
        if not header:
            raise BackendError("git cat-file exited unexpectedly")

        parts = header.split()
        if len(parts) != 3:
            raise BackendError(f"Object {object_id} is {parts[-1].decode()}")

        obj_type = parts[1].decode("ascii")
        size = int(parts[2])
        data = None
        if self.with_content:
            data = self.process.stdout.read(size)
            self.process.stdout.read(1)
        return obj_type, size, data

    def close(self):
        if self.process.poll() is None:
            self.process.stdin.close()
            self.process.wait()
        self.process.stdout.close()


class GitBackend:
    """
    Version control backend driving the `git` executable.

    Resolves revisions, streams ancestry, reads commit and blob objects over
    persistent `cat-file` processes and computes tree diffs with rename
    detection. Owns no caches shared across repositories.
    """

    def __init__(self, repo_path: str):
        self.repo_path = os.path.abspath(repo_path)
        self._batch: Optional[_CatFile] = None
        self._batch_check: Optional[_CatFile] = None
        self._empty_tree: Optional[str] = None
        self._trees: Dict[str, str] = {}

        try:
            result = self._git("rev-parse", "--git-dir")
        except FileNotFoundError as e:
            raise CadenceError("git executable not found on PATH") from e
        if result.returncode != 0:
            raise CadenceError(f"Not a git repository: {self.repo_path}")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _git(self, *args: str, input: Optional[bytes] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", "-C", self.repo_path] + list(args),
            input=input,
            capture_output=True,
        )

    @staticmethod
    def _stderr(result: subprocess.CompletedProcess) -> str:
        return result.stderr.decode("utf-8", errors="replace").strip()

    @property
    def batch(self) -> _CatFile:
        if self._batch is None:
            self._batch = _CatFile(self.repo_path, with_content=True)
        return self._batch

    @property
    def batch_check(self) -> _CatFile:
        if self._batch_check is None:
            self._batch_check = _CatFile(self.repo_path, with_content=False)
        return self._batch_check

    def close(self):
        for reader in (self._batch, self._batch_check):
            if reader is not None:
                reader.close()
        self._batch = None
        self._batch_check = None

    # -- revisions -----------------------------------------------------------

    def has_commits(self) -> bool:
        result = self._git("rev-list", "-n", "1", "--all")
        return result.returncode == 0 and bool(result.stdout.strip())

    def is_unborn(self, spec: str) -> bool:
        """True when `spec` is a symbolic ref (HEAD) to a branch with no commits yet"""
        if self._git("symbolic-ref", "-q", spec).returncode != 0:
            return False
        return self._git("rev-parse", "--verify", "--quiet", spec).returncode != 0

    def resolve_revision(self, spec: str) -> str:
        result = self._git("rev-parse", "--verify", "--quiet", f"{spec}^{{commit}}")
        commit_id = result.stdout.decode("ascii", errors="replace").strip()
        if result.returncode != 0 or not commit_id:
            raise UnresolvableRevision(spec, self._stderr(result))
        return commit_id

    def count_commits(self, start: str) -> Optional[int]:
        result = self._git("rev-list", "--count", start)
        if result.returncode != 0:
            return None
        return int(result.stdout.strip() or 0)

    def ancestors(self, start: str) -> Iterator[str]:
        """
        Lazily yield commit ids reachable from `start`: no parent before all
        of its children, otherwise newest commit time first.
        """
        process = subprocess.Popen(
            ["git", "-C", self.repo_path, "rev-list", "--date-order", start],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="ascii",
            errors="replace",
        )
        finished = False
        try:
            for line in process.stdout:
                commit_id = line.strip()
                if commit_id:
                    yield commit_id
            finished = True
        finally:
            if not finished and process.poll() is None:
                process.terminate()
            process.stdout.close()
            stderr = process.stderr.read()
            process.stderr.close()
            process.wait()

        if process.returncode != 0:
            raise CorruptHistory(f"git rev-list failed: {stderr.strip()}")

    # -- objects -------------------------------------------------------------

    def load_commit(self, commit_id: str) -> CommitMeta:
        try:
            obj_type, _, data = self.batch.query(commit_id)
        except BackendError as e:
            raise CorruptHistory(f"Cannot read commit {commit_id}: {e}") from e
        if obj_type != "commit":
            raise CorruptHistory(f"Object {commit_id} is a {obj_type}, not a commit")
        commit = parse_commit(commit_id, data)
        self._trees[commit_id] = commit.tree
        return commit

    def tree_of(self, commit_id: str) -> str:
        if commit_id not in self._trees:
            self.load_commit(commit_id)
        return self._trees[commit_id]

    def empty_tree(self) -> str:
        if self._empty_tree is None:
            result = self._git("hash-object", "-t", "tree", "--stdin", input=b"")
            if result.returncode != 0:
                raise BackendError(f"Cannot hash empty tree: {self._stderr(result)}")
            self._empty_tree = result.stdout.decode("ascii").strip()
        return self._empty_tree

    def blob_size(self, blob_id: str) -> int:
        """Size from the object header only; the content is not read"""
        obj_type, size, _ = self.batch_check.query(blob_id)
        if obj_type != "blob":
            raise BackendError(f"Object {blob_id} is a {obj_type}, not a blob")
        return size

    def blob_line_count(self, blob_id: str) -> int:
        obj_type, _, data = self.batch.query(blob_id)
        if obj_type != "blob":
            raise BackendError(f"Object {blob_id} is a {obj_type}, not a blob")
        return count_lines(data)

    # -- diffs ---------------------------------------------------------------

    def tree_diff(self, base_tree: str, tree: str) -> List[Change]:
        result = self._git(
            "diff-tree", "-r", "-z", "-M", "--no-abbrev", base_tree, tree
        )
        if result.returncode != 0:
            raise BackendError(
                f"diff-tree {base_tree[:12]}..{tree[:12]} failed: {self._stderr(result)}"
            )
        return parse_raw_diff(result.stdout)

    def line_diff_stats(self, old_id: str, new_id: str) -> Optional[Tuple[int, int]]:
        """(insertions, removals) between two blobs, None for binary content"""
        if old_id == new_id:
            return 0, 0
        result = self._git(
            "diff", "--no-ext-diff", "--no-textconv", "--numstat", old_id, new_id
        )
        if result.returncode != 0:
            raise BackendError(
                f"diff {old_id[:12]}..{new_id[:12]} failed: {self._stderr(result)}"
            )
        lines = result.stdout.decode("utf-8", errors="replace").splitlines()
        if not lines:
            return 0, 0
        added, removed = lines[0].split("\t")[:2]
        if added == "-" or removed == "-":
            return None
        return int(added), int(removed)

    def diff_stats(self, base_tree: str, tree: str) -> DiffStats:
        result = self._git("diff-tree", "-r", "-M", "--shortstat", base_tree, tree)
        if result.returncode != 0:
            raise BackendError(
                f"diff-tree --shortstat failed: {self._stderr(result)}"
            )
        text = result.stdout.decode("utf-8", errors="replace")
        values = {}
        for key, pattern in _SHORTSTAT_RE.items():
            match = pattern.search(text)
            values[key] = int(match.group(1)) if match else 0
        return DiffStats(**values)


# ============================================================================
# TRAVERSAL ENGINE
# ============================================================================


class Control(Enum):
    CONTINUE = "continue"
    STOP = "stop"


class RangeResolver:
    """Turn revision specs into the concrete commit ids bounding a walk"""

    def __init__(self, backend):
        self.backend = backend

    def resolve(
        self, start_spec: str = "HEAD", since_spec: Optional[str] = None
    ) -> Optional[WalkRange]:
        """Return None for a repository without commits or an unborn start branch"""
        if not self.backend.has_commits() or self.backend.is_unborn(start_spec):
            return None
        start = self.backend.resolve_revision(start_spec)
        since = self.backend.resolve_revision(since_spec) if since_spec else None
        return WalkRange(start=start, since=since)


class HistoryWalker:
    """
    Visit commits from `start` in ancestry order, stopping after `since`
    (inclusive) or when the visitor asks to stop.
    """

    def __init__(self, backend):
        self.backend = backend

    def walk(
        self,
        walk_range: WalkRange,
        visit: Callable[[str, CommitMeta], Optional[Control]],
    ) -> int:
        visited = 0
        ancestors = self.backend.ancestors(walk_range.start)
        try:
            for commit_id in ancestors:
                commit = self.backend.load_commit(commit_id)
                visited += 1
                control = visit(commit_id, commit)
                if walk_range.since is not None and commit_id == walk_range.since:
                    break
                if control is Control.STOP:
                    break
        finally:
            ancestors.close()
        return visited


def normalize_changes(changes: Sequence[Change]) -> List[Change]:
    """
    Keep only regular-file blob entries. A modification that turns a blob
    into something else (or back) becomes a deletion (or addition) of the
    blob side.
    """
    normalized: List[Change] = []
    for change in changes:
        if isinstance(change, (Addition, Deletion)):
            if is_blob_mode(change.mode):
                normalized.append(change)
        elif isinstance(change, Modification):
            old_blob = is_blob_mode(change.old_mode)
            new_blob = is_blob_mode(change.new_mode)
            if old_blob and new_blob:
                normalized.append(change)
            elif new_blob:
                normalized.append(Addition(change.path, change.new_id, change.new_mode))
            elif old_blob:
                normalized.append(Deletion(change.path, change.old_id, change.old_mode))
        elif isinstance(change, Rewrite):
            if is_blob_mode(change.new_mode):
                normalized.append(change)
    return normalized


class ChangeExtractor:
    """Per-commit tree diff against the first parent (or the empty tree)"""

    def __init__(self, backend, reporter: Optional[ProgressReporter] = None):
        self.backend = backend
        self.reporter = reporter or ProgressReporter(quiet=True)

    def base_tree(self, commit: CommitMeta) -> str:
        if commit.parents:
            return self.backend.tree_of(commit.parents[0])
        return self.backend.empty_tree()

    def diff(self, commit: CommitMeta) -> List[Change]:
        try:
            raw = self.backend.tree_diff(self.base_tree(commit), commit.tree)
        except BackendError as e:
            self.reporter.warning(f"Diff unavailable for {commit.id[:12]}: {e}")
            return []
        return normalize_changes(raw)


# ============================================================================
# BASE AGGREGATOR
# ============================================================================


class CommitAggregator:
    """
    Base class for aggregators folded over the commit stream.

    The analyzer calls process_commit() once per accepted commit in walk
    order and finalize() once at the end. Class flags tell the analyzer
    whether the aggregator needs the change list and whether merge commits
    are skipped entirely.
    """

    name = "aggregator"
    needs_changes = False
    skip_merges = False

    def __init__(
        self,
        analyzer,
        author: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.analyzer = analyzer
        self.author = author.lower() if author else None
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.commits_processed = 0

    @property
    def exhausted(self) -> bool:
        """True once the aggregator wants no further commits"""
        return False

    def accepts(self, commit: CommitMeta) -> bool:
        if self.skip_merges and commit.is_merge:
            return False
        return author_matches(commit, self.author)

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        """Process a single commit - override in subclasses"""
        pass

    def blob_lines(self, blob_id: str) -> int:
        try:
            return self.analyzer.backend.blob_line_count(blob_id)
        except BackendError as e:
            self.reporter.warning(f"Cannot read blob {blob_id[:12]}: {e}")
            return 0

    def line_delta(self, change: Change) -> Optional[Tuple[int, int]]:
        """Lines (added, removed) by one change; None when there is no text delta"""
        if isinstance(change, Addition):
            return self.blob_lines(change.new_id), 0
        if isinstance(change, Deletion):
            return 0, self.blob_lines(change.old_id)
        if isinstance(change, Modification):
            try:
                return self.analyzer.backend.line_diff_stats(change.old_id, change.new_id)
            except BackendError as e:
                self.reporter.warning(f"Line diff unavailable for {change.path}: {e}")
                return None
        # renames carry no line delta
        return None

    def finalize(self) -> dict:
        """Build the report - override in subclasses"""
        return {}

    def to_json(self, report: dict) -> Any:
        return report

    def render_text(self, report: dict) -> List[str]:
        return [json.dumps(report, indent=2)]

    def export(self, output_path: str) -> int:
        """Export the report to a JSON file"""
        data = self.to_json(self.finalize())
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return len(json.dumps(data))


# ============================================================================
# AGGREGATORS
# ============================================================================


class ChurnAggregator(CommitAggregator):
    """Lines added and removed, keyed by author or by file path"""

    name = "churn"
    needs_changes = True

    def __init__(self, *args, per_file: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.per_file = per_file
        self.totals = defaultdict(lambda: {"added": 0, "removed": 0})

    def _key(self, commit: CommitMeta, path: str) -> str:
        return path if self.per_file else commit.identity

    def _add(self, key: str, added: int, removed: int):
        entry = self.totals[key]
        entry["added"] += added
        entry["removed"] += removed

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        for change in changes:
            delta = self.line_delta(change)
            if delta is not None:
                self._add(self._key(commit, change.path), *delta)

    def finalize(self) -> dict:
        return {
            "totals": {
                key: dict(self.totals[key]) for key in sorted(self.totals)
            }
        }

    def render_text(self, report: dict) -> List[str]:
        return [
            f"{key}: +{counts['added']} -{counts['removed']}"
            for key, counts in report["totals"].items()
        ]


class CommitFrequencyAggregator(CommitAggregator):
    """Commits per author-local day and ISO week, and active days per author"""

    name = "commit_frequency"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.days = Counter()
        self.weeks = Counter()
        self.active_days = defaultdict(set)

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        day = commit.local_date
        self.days[day.isoformat()] += 1
        self.weeks[iso_week_label(day)] += 1
        self.active_days[commit.identity].add(day)

    def finalize(self) -> dict:
        return {
            "commits_per_day": {day: self.days[day] for day in sorted(self.days)},
            "commits_per_week": {
                week: self.weeks[week] for week in sorted(self.weeks)
            },
            "active_days_per_author": {
                author: len(self.active_days[author])
                for author in sorted(self.active_days)
            },
        }

    def render_text(self, report: dict) -> List[str]:
        lines = [f"{day}: {count}" for day, count in report["commits_per_day"].items()]
        lines += [
            f"week {week}: {count}"
            for week, count in report["commits_per_week"].items()
        ]
        lines += [
            f"{author} active days: {days}"
            for author, days in report["active_days_per_author"].items()
        ]
        return lines


class CommitSizeAggregator(CommitAggregator):
    """Distribution of files and lines changed per commit"""

    name = "commit_size"

    def __init__(self, *args, percentiles: Optional[Sequence[float]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        if percentiles is not None:
            for pct in percentiles:
                if not 0.0 <= float(pct) <= 100.0:
                    raise InvalidConfiguration(f"percentile {pct} out of range 0..=100")
            percentiles = [float(pct) for pct in percentiles]
        self.percentiles = percentiles
        self.files: List[int] = []
        self.lines: List[int] = []

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        extractor = self.analyzer.extractor
        try:
            stats = self.analyzer.backend.diff_stats(
                extractor.base_tree(commit), commit.tree
            )
        except BackendError as e:
            self.reporter.warning(f"Diff stats unavailable for {commit.id[:12]}: {e}")
            return
        self.files.append(stats.files_changed)
        self.lines.append(stats.lines_added + stats.lines_removed)

    @staticmethod
    def _describe(values: List[int]) -> Tuple[int, int, float, float]:
        if not values:
            return 0, 0, 0.0, 0.0
        return min(values), max(values), sum(values) / len(values), median(values)

    def finalize(self) -> dict:
        min_files, max_files, avg_files, median_files = self._describe(self.files)
        min_lines, max_lines, avg_lines, median_lines = self._describe(self.lines)
        report = {
            "min_files": min_files,
            "max_files": max_files,
            "avg_files": avg_files,
            "median_files": median_files,
            "min_lines": min_lines,
            "max_lines": max_lines,
            "avg_lines": avg_lines,
            "median_lines": median_lines,
        }
        if self.percentiles is not None and self.lines:
            ordered = sorted(self.lines)
            report["line_percentiles"] = [
                [pct, percentile_of_sorted(ordered, pct)] for pct in self.percentiles
            ]
        return report

    def render_text(self, report: dict) -> List[str]:
        lines = [
            "files per commit: min={} max={} avg={:.2f} median={:.2f}".format(
                report["min_files"],
                report["max_files"],
                report["avg_files"],
                report["median_files"],
            ),
            "lines per commit: min={} max={} avg={:.2f} median={:.2f}".format(
                report["min_lines"],
                report["max_lines"],
                report["avg_lines"],
                report["median_lines"],
            ),
        ]
        for pct, value in report.get("line_percentiles", []):
            lines.append(f"p{pct:g} = {value}")
        return lines


class FrecencyAggregator(CommitAggregator):
    """
    Rank files by how recently and how frequently they changed.

    Every addition or modification of a blob contributes
        weight(commit) * size_penalty(blob size)
    to its path, where
        weight = 1 / (age_days + 1) ** age_exponent
        size_penalty = 1 / (1 + sqrt(size / size_ref))
    and age_days, measured from the committer timestamp, is truncated to whole
    days. Merge commits are skipped so content that already appeared on a
    parent branch is not counted twice.
    """

    name = "frecency"
    needs_changes = True
    skip_merges = True

    def __init__(
        self,
        *args,
        paths: Optional[Sequence[str]] = None,
        max_commits: Optional[int] = None,
        ascending: bool = False,
        path_only: bool = False,
        age_exponent: float = 2.0,
        size_ref: float = 1024.0,
        now: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        if size_ref is None or float(size_ref) <= 0:
            raise InvalidConfiguration(f"size-ref must be positive, got {size_ref}")
        if max_commits is not None and int(max_commits) < 0:
            raise InvalidConfiguration(
                f"max-commits must not be negative, got {max_commits}"
            )
        self.paths = set(paths) if paths else None
        self.max_commits = int(max_commits) if max_commits is not None else None
        self.ascending = ascending
        self.path_only = path_only
        self.age_exponent = float(age_exponent)
        self.size_ref = float(size_ref)
        self.now = int(now) if now is not None else int(time.time())
        self.scores = defaultdict(float)
        self.size_cache: Dict[str, int] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    @property
    def exhausted(self) -> bool:
        return self.max_commits is not None and self.commits_processed >= self.max_commits

    def age_weight(self, commit_time: int) -> float:
        age_days = max(0, (self.now - commit_time) // SECONDS_PER_DAY)
        return 1.0 / (age_days + 1) ** self.age_exponent

    def size_penalty(self, size: int) -> float:
        return 1.0 / (1.0 + math.sqrt(size / self.size_ref))

    def blob_size(self, blob_id: str) -> int:
        if blob_id in self.size_cache:
            self.cache_hits += 1
            return self.size_cache[blob_id]
        self.cache_misses += 1
        try:
            size = self.analyzer.backend.blob_size(blob_id)
        except BackendError as e:
            self.reporter.warning(f"Failed to read header for blob {blob_id}: {e}")
            size = 0
        self.size_cache[blob_id] = size
        return size

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        weight = self.age_weight(commit.commit_time)
        for change in changes:
            if not isinstance(change, (Addition, Modification)):
                continue
            if self.paths is not None and change.path not in self.paths:
                continue
            size = self.blob_size(change.new_id)
            self.scores[change.path] += weight * self.size_penalty(size)

    def finalize(self) -> dict:
        if self.ascending:
            ranked = sorted(self.scores.items(), key=lambda item: (item[1], item[0]))
        else:
            ranked = sorted(self.scores.items(), key=lambda item: (-item[1], item[0]))
        return {"scores": [[path, score] for path, score in ranked]}

    def to_json(self, report: dict) -> Any:
        if self.path_only:
            return {"paths": [path for path, _ in report["scores"]]}
        return report

    def render_text(self, report: dict) -> List[str]:
        if self.path_only:
            return [path for path, _ in report["scores"]]
        return [f"{score:.4f}\t{path}" for path, score in report["scores"]]


class OwnershipAggregator(CommitAggregator):
    """Share of file touches per author, grouped by leading path segments"""

    name = "ownership"
    needs_changes = True
    skip_merges = True

    def __init__(self, *args, path: Optional[str] = None, depth: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        if depth is None or int(depth) < 0:
            raise InvalidConfiguration(f"depth must not be negative, got {depth}")
        self.pattern = path
        self.depth = int(depth)
        self.touches = defaultdict(Counter)

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        for change in changes:
            location = change.location
            if self.pattern and not fnmatchcase(location, self.pattern):
                continue
            bucket = ownership_bucket(location, self.depth)
            self.touches[bucket][commit.identity] += 1

    def finalize(self) -> dict:
        report = {}
        for bucket in sorted(self.touches):
            counts = self.touches[bucket]
            total = sum(counts.values())
            if total == 0:
                report[bucket] = {}
                continue
            report[bucket] = {
                author: counts[author] * 100.0 / total for author in sorted(counts)
            }
        return report

    def render_text(self, report: dict) -> List[str]:
        lines = []
        for bucket, shares in report.items():
            ranked = sorted(shares.items(), key=lambda item: (-item[1], item[0]))
            parts = " ".join(f"{author} {share:.0f}%" for author, share in ranked)
            lines.append(f"{bucket}: {parts}".rstrip())
        return lines


class StreaksAggregator(CommitAggregator):
    """Longest run of consecutive author-local commit days per author"""

    name = "streaks"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.days_by_author = defaultdict(set)

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        self.days_by_author[commit.identity].add(commit.local_date)

    def finalize(self) -> dict:
        return {
            author: longest_streak(list(self.days_by_author[author]))
            for author in sorted(self.days_by_author)
        }

    def render_text(self, report: dict) -> List[str]:
        return [f"{author}: {days}" for author, days in report.items()]


class TimeOfDayAggregator(CommitAggregator):
    """Histogram of author-local commit hours in equal-width buckets"""

    name = "time_of_day"

    def __init__(self, *args, bins: int = 24, **kwargs):
        super().__init__(*args, **kwargs)
        if bins is None or not 1 <= int(bins) <= 24:
            raise InvalidConfiguration(f"--bins must be in 1..=24, got {bins}")
        self.bins = int(bins)
        self.counts = [0] * self.bins

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        self.counts[hour_bucket(commit.local_datetime.hour, self.bins)] += 1

    def finalize(self) -> dict:
        return {"bins": list(self.counts)}

    def render_text(self, report: dict) -> List[str]:
        bounds = bucket_bounds(len(report["bins"]))
        return [
            f"{start:02d}-{end:02d}: {count}"
            for (start, end), count in zip(bounds, report["bins"])
        ]


@dataclass
class AuthorWork:
    """Commits attributed to one person, possibly under several identities"""

    names: List[str]
    emails: List[str]
    times: List[int] = field(default_factory=list)
    files: List[int] = field(default_factory=lambda: [0, 0, 0])
    lines: List[int] = field(default_factory=lambda: [0, 0])

    def merge(self, other: "AuthorWork"):
        self.names += [name for name in other.names if name not in self.names]
        self.emails += [email for email in other.emails if email not in self.emails]
        self.times += other.times
        self.files = [a + b for a, b in zip(self.files, other.files)]
        self.lines = [a + b for a, b in zip(self.lines, other.lines)]


class HoursAggregator(CommitAggregator):
    """
    Estimate hours worked from the gaps between an author's commits.

    Commits closer than two hours apart are assumed to be one working
    session and contribute the gap; a larger gap starts a new session worth
    two hours, as does an author's first commit.

    Commits are grouped by lowercased email. Unless omit_unify_identities is
    set, email groups sharing an author name are then merged into one person.
    file_stats and line_stats additionally count files added, removed and
    modified and lines added and removed against the first parent.
    """

    name = "hours"

    MAX_COMMIT_GAP_MINUTES = 2.0 * 60.0
    FIRST_COMMIT_ADDITION_MINUTES = 2.0 * 60.0
    HOURS_PER_WORKDAY = 8.0

    def __init__(
        self,
        *args,
        no_bots: bool = False,
        show_pii: bool = False,
        file_stats: bool = False,
        line_stats: bool = False,
        omit_unify_identities: bool = False,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.no_bots = no_bots
        self.show_pii = show_pii
        self.file_stats = file_stats
        self.line_stats = line_stats
        self.omit_unify_identities = omit_unify_identities
        self.needs_changes = file_stats or line_stats
        self.by_email: Dict[str, AuthorWork] = {}

    def accepts(self, commit: CommitMeta) -> bool:
        if self.no_bots and "[bot]" in commit.author_name:
            return False
        return super().accepts(commit)

    def process_commit(self, commit: CommitMeta, changes: Sequence[Change]):
        email = commit.author_email.lower()
        work = self.by_email.get(email)
        if work is None:
            work = self.by_email[email] = AuthorWork([commit.author_name], [email])
        elif commit.author_name not in work.names:
            work.names.append(commit.author_name)
        work.times.append(commit.author_time)

        for change in changes:
            if self.file_stats:
                if isinstance(change, Addition):
                    work.files[0] += 1
                elif isinstance(change, Deletion):
                    work.files[1] += 1
                else:
                    work.files[2] += 1
            if self.line_stats:
                delta = self.line_delta(change)
                if delta is not None:
                    work.lines[0] += delta[0]
                    work.lines[1] += delta[1]

    @classmethod
    def estimate_hours(cls, times: Sequence[int]) -> float:
        ordered = sorted(times)
        minutes = cls.FIRST_COMMIT_ADDITION_MINUTES
        for previous, current in zip(ordered, ordered[1:]):
            gap = (current - previous) / 60.0
            if gap < cls.MAX_COMMIT_GAP_MINUTES:
                minutes += gap
            else:
                minutes += cls.FIRST_COMMIT_ADDITION_MINUTES
        return minutes / 60.0

    def people(self) -> List[AuthorWork]:
        """Email groups, merged by shared author name unless told otherwise"""
        people: List[AuthorWork] = []
        for email in sorted(self.by_email):
            work = AuthorWork([], [])
            work.merge(self.by_email[email])
            match = None
            if not self.omit_unify_identities:
                match = next(
                    (p for p in people if any(name in p.names for name in work.names)),
                    None,
                )
            if match is None:
                people.append(work)
            else:
                match.merge(work)
        return people

    def finalize(self) -> dict:
        per_author = []
        files = [0, 0, 0]
        lines = [0, 0]
        for work in self.people():
            entry = {
                "name": work.names[0],
                "email": work.emails[0],
                "hours": self.estimate_hours(work.times),
                "commits": len(work.times),
            }
            if self.file_stats:
                entry["files"] = list(work.files)
                files = [a + b for a, b in zip(files, work.files)]
            if self.line_stats:
                entry["lines"] = list(work.lines)
                lines = [a + b for a, b in zip(lines, work.lines)]
            per_author.append(entry)

        total_hours = sum(entry["hours"] for entry in per_author)
        report = {
            "total_hours": total_hours,
            "total_8h_days": total_hours / self.HOURS_PER_WORKDAY,
            "total_commits": sum(entry["commits"] for entry in per_author),
            "total_authors": len(per_author),
        }
        if self.file_stats:
            # added, removed, modified, remaining
            report["total_files"] = files + [max(0, files[0] - files[1])]
        if self.line_stats:
            # added, removed, remaining
            report["total_lines"] = lines + [max(0, lines[0] - lines[1])]
        if self.show_pii:
            report["authors"] = sorted(
                per_author, key=lambda entry: (-entry["hours"], entry["email"])
            )
        return report

    def render_text(self, report: dict) -> List[str]:
        lines = []
        for entry in report.get("authors", []):
            line = (
                f"{entry['name']} <{entry['email']}>: {entry['hours']:.2f} hours "
                f"({entry['commits']} commits)"
            )
            if "files" in entry:
                line += " files {}/{}/{}".format(*entry["files"])
            if "lines" in entry:
                line += " lines +{} -{}".format(*entry["lines"])
            lines.append(line)
        lines += [
            f"total hours: {report['total_hours']:.2f}",
            f"total 8h days: {report['total_8h_days']:.2f}",
            f"total commits = {report['total_commits']}",
            f"total authors: {report['total_authors']}",
        ]
        if "total_files" in report:
            lines.append(
                "total files added/removed/modified/remaining: {}/{}/{}/{}".format(
                    *report["total_files"]
                )
            )
        if "total_lines" in report:
            lines.append(
                "total lines added/removed/remaining: {}/{}/{}".format(
                    *report["total_lines"]
                )
            )
        return lines


# ============================================================================
# CORE ANALYZER
# ============================================================================


class CommitHistoryAnalyzer:
    """
    Drives one walk: resolve the range, visit every commit once, extract its
    changes at most once, and hand it to each registered aggregator.
    """

    def __init__(
        self,
        repo_path: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
        backend=None,
        memory_limit_mb: Optional[float] = None,
    ):
        self.backend = backend if backend is not None else GitBackend(repo_path)
        self.repo_path = self.backend.repo_path
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.resolver = RangeResolver(self.backend)
        self.walker = HistoryWalker(self.backend)
        self.extractor = ChangeExtractor(self.backend, self.reporter)
        self.aggregators: List[CommitAggregator] = []
        self.metrics = WalkMetrics()
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.backend.close()

    def add_aggregator(self, aggregator: CommitAggregator):
        """Register an aggregator for the next walk"""
        self.aggregators.append(aggregator)

    def _process_commit(self, commit: CommitMeta):
        changes = None
        for aggregator in self.aggregators:
            if aggregator.exhausted or not aggregator.accepts(commit):
                continue
            if aggregator.needs_changes and changes is None:
                changes = self.extractor.diff(commit)
                self.metrics.commits_diffed += 1
                self.metrics.changes_extracted += len(changes)

            started = time.perf_counter()
            aggregator.process_commit(
                commit, changes if aggregator.needs_changes else ()
            )
            aggregator.commits_processed += 1
            self.metrics.aggregator_times[aggregator.name] = (
                self.metrics.aggregator_times.get(aggregator.name, 0.0)
                + time.perf_counter()
                - started
            )

    def analyze(
        self, start_spec: str = "HEAD", since_spec: Optional[str] = None
    ) -> Dict[str, dict]:
        """Walk the history once and return every aggregator's report by name"""
        start_time = time.time()
        self.reporter.stage_start("History walk", f"Repository: {self.repo_path}")

        walk_range = self.resolver.resolve(start_spec, since_spec)
        if walk_range is None:
            self.reporter.info("Repository has no commits; reports are empty")
        elif self.aggregators and not all(a.exhausted for a in self.aggregators):
            total = None if walk_range.since else self.backend.count_commits(walk_range.start)
            progress_bar = self.reporter.create_progress_bar(total)

            def visit(commit_id: str, commit: CommitMeta) -> Control:
                self._process_commit(commit)
                self.metrics.commits_walked += 1
                if progress_bar is not None:
                    progress_bar.update(1)
                if self.metrics.commits_walked % 5000 == 0:
                    memory_mb = self.memory_monitor.check_memory()
                    if self.reporter.verbose:
                        self.reporter.info(f"Memory usage: {memory_mb:.1f} MB")
                if all(a.exhausted for a in self.aggregators):
                    return Control.STOP
                return Control.CONTINUE

            try:
                self.walker.walk(walk_range, visit)
            finally:
                if progress_bar is not None:
                    progress_bar.close()

        reports = {a.name: a.finalize() for a in self.aggregators}

        for aggregator in self.aggregators:
            self.metrics.cache_hits += getattr(aggregator, "cache_hits", 0)
            self.metrics.cache_misses += getattr(aggregator, "cache_misses", 0)
        self.metrics.total_time = time.time() - start_time
        self.metrics.memory_peak_mb = self.memory_monitor.get_peak()
        self.reporter.stage_complete(
            "History walk",
            {
                "Commits walked": f"{self.metrics.commits_walked:,}",
                "Commits diffed": f"{self.metrics.commits_diffed:,}",
                "Changes extracted": f"{self.metrics.changes_extracted:,}",
            },
        )
        return reports


# ============================================================================
# MANIFEST
# ============================================================================


def generate_manifest(
    output_dir: str, analyzer: CommitHistoryAnalyzer, datasets: Dict[str, str]
) -> str:
    """Write manifest.json describing every exported report"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": analyzer.repo_path,
        "walk_metrics": analyzer.metrics.to_dict(),
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()

            manifest["datasets"][dataset_name] = {
                "file": file_path,
                "file_size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }

    manifest_path = os.path.join(output_dir, "manifest.json")
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)
    return manifest_path


# ============================================================================
# AGGREGATOR FACTORIES
# ============================================================================


def parse_percentiles(value: Any) -> Optional[List[float]]:
    """Accept '50,90,99' from the command line or a list from a config file"""
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",") if item.strip()]
    elif isinstance(value, (int, float)):
        items = [value]
    else:
        items = list(value)
    try:
        return [float(item) for item in items]
    except (TypeError, ValueError) as e:
        raise InvalidConfiguration(f"Invalid percentile list {value!r}: {e}") from e


def _paths_option(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


def _base_kwargs(resolver: ConfigResolver, reporter: ProgressReporter) -> Dict[str, Any]:
    return {"author": resolver.get("author"), "reporter": reporter}


AGGREGATOR_BUILDERS: Dict[str, Callable[..., CommitAggregator]] = {
    "churn": lambda analyzer, resolver, reporter: ChurnAggregator(
        analyzer,
        per_file=bool(resolver.get("per_file", False)),
        **_base_kwargs(resolver, reporter),
    ),
    "commit-frequency": lambda analyzer, resolver, reporter: CommitFrequencyAggregator(
        analyzer, **_base_kwargs(resolver, reporter)
    ),
    "commit-size": lambda analyzer, resolver, reporter: CommitSizeAggregator(
        analyzer,
        percentiles=parse_percentiles(resolver.get("percentiles")),
        **_base_kwargs(resolver, reporter),
    ),
    "frecency": lambda analyzer, resolver, reporter: FrecencyAggregator(
        analyzer,
        paths=_paths_option(resolver.get("paths")),
        max_commits=resolver.get("max_commits"),
        ascending=bool(resolver.get("ascending", False))
        and not resolver.get("descending", False),
        path_only=bool(resolver.get("path_only", False)),
        age_exponent=resolver.get("age_exponent", 2.0),
        size_ref=resolver.get("size_ref", 1024.0),
        now=resolver.get("now"),
        **_base_kwargs(resolver, reporter),
    ),
    "ownership": lambda analyzer, resolver, reporter: OwnershipAggregator(
        analyzer,
        path=resolver.get("path"),
        depth=resolver.get("depth", 1),
        **_base_kwargs(resolver, reporter),
    ),
    "streaks": lambda analyzer, resolver, reporter: StreaksAggregator(
        analyzer, **_base_kwargs(resolver, reporter)
    ),
    "time-of-day": lambda analyzer, resolver, reporter: TimeOfDayAggregator(
        analyzer, bins=resolver.get("bins", 24), **_base_kwargs(resolver, reporter)
    ),
    "hours": lambda analyzer, resolver, reporter: HoursAggregator(
        analyzer,
        no_bots=bool(resolver.get("no_bots", False)),
        show_pii=bool(resolver.get("show_pii", False)),
        file_stats=bool(resolver.get("file_stats", False)),
        line_stats=bool(resolver.get("line_stats", False)),
        omit_unify_identities=bool(resolver.get("omit_unify_identities", False)),
        **_base_kwargs(resolver, reporter),
    ),
}


# ============================================================================
# CLI INTERFACE
# ============================================================================


def common_options(func):
    """--working-dir, --rev-spec and --author, shared by every command"""
    func = click.option(
        "--author",
        help="Only count commits whose author name or email contains this "
        "substring (case-insensitive).",
    )(func)
    func = click.option(
        "--rev-spec",
        help="The revision to start walking from (default: HEAD).",
    )(func)
    func = click.option(
        "--working-dir",
        type=click.Path(exists=True, file_okay=False),
        default=".",
        show_default=True,
        help="The directory containing a '.git/' folder.",
    )(func)
    return func


def _make_reporter(resolver: ConfigResolver) -> ProgressReporter:
    return ProgressReporter(
        quiet=bool(resolver.get("quiet", False)),
        verbose=bool(resolver.get("verbose", False)),
        use_colors=not resolver.get("no_color", False),
    )


def _profiling(resolver: ConfigResolver) -> ProfilingContext:
    output_path = resolver.get("profile_output")
    return ProfilingContext(
        enabled=bool(resolver.get("profile", False) or output_path),
        output_path=output_path,
    )


def _resolvers(ctx: click.Context, command: str, working_dir: str, options: Dict[str, Any]):
    cli_args = dict(ctx.obj or {})
    cli_args.update(options)
    config_path = cli_args.pop("config", None)
    try:
        bootstrap = ConfigResolver(cli_args, config_path, command, working_dir)
    except CadenceError as e:
        ProgressReporter(use_colors=not cli_args.get("no_color")).error(str(e))
        ctx.exit(1)
    reporter = _make_reporter(bootstrap)
    resolver = ConfigResolver(cli_args, config_path, command, working_dir, reporter)
    return resolver, reporter


def run_command(ctx: click.Context, command: str, working_dir: str, **options):
    """Build one aggregator, walk the history and print its report"""
    resolver, reporter = _resolvers(ctx, command, working_dir, options)

    try:
        with _profiling(resolver):
            with CommitHistoryAnalyzer(
                working_dir, reporter, memory_limit_mb=resolver.get("memory_limit")
            ) as analyzer:
                aggregator = AGGREGATOR_BUILDERS[command](analyzer, resolver, reporter)
                analyzer.add_aggregator(aggregator)
                start_spec = resolver.get("until") or resolver.get("rev_spec", "HEAD")
                reports = analyzer.analyze(start_spec, resolver.get("since"))
    except (CadenceError, MemoryError) as e:
        reporter.error(str(e))
        ctx.exit(1)

    report = reports[aggregator.name]
    if resolver.get("json", False):
        click.echo(json.dumps(aggregator.to_json(report), ensure_ascii=False))
    else:
        for line in aggregator.render_text(report):
            click.echo(line)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("--since", help="Stop the walk at this revision (inclusive).")
@click.option(
    "--until", help="Start the walk at this revision; overrides --rev-spec."
)
@click.option("--json", "json_output", is_flag=True, default=None, help="Produce JSON output.")
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option(
    "-v", "--verbose", is_flag=True, default=None, help="Show detailed progress information"
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option("--profile", is_flag=True, default=None, help="Enable performance profiling")
@click.option(
    "--profile-output",
    type=click.Path(dir_okay=False),
    help="Also write raw cProfile statistics to this file (implies --profile)",
)
@click.version_option(version=VERSION)
@click.pass_context
def cli(
    ctx, since, until, json_output, config, quiet, verbose, no_color, memory_limit,
    profile, profile_output,
):
    """
    git-cadence - author and time aware analytics over a git history.

    Every command walks the ancestry of --rev-spec (or --until) once,
    stopping after --since when given.
    """
    ctx.obj = {
        "since": since,
        "until": until,
        "json": json_output,
        "config": config,
        "quiet": quiet,
        "verbose": verbose,
        "no_color": no_color,
        "memory_limit": memory_limit,
        "profile": profile,
        "profile_output": profile_output,
    }


@cli.command(help="Summarize lines added and removed.")
@common_options
@click.option(
    "--per-file", is_flag=True, default=None,
    help="Show totals per file path instead of per author.",
)
@click.pass_context
def churn(ctx, working_dir, **options):
    run_command(ctx, "churn", working_dir, **options)


@cli.command("commit-frequency", help="Count commits per day and week.")
@common_options
@click.pass_context
def commit_frequency(ctx, working_dir, **options):
    run_command(ctx, "commit-frequency", working_dir, **options)


@cli.command("commit-size", help="Analyze distribution of commit sizes.")
@common_options
@click.option(
    "--percentiles",
    help="Comma separated percentiles of lines changed per commit, e.g. 50,90,99.",
)
@click.pass_context
def commit_size(ctx, working_dir, **options):
    run_command(ctx, "commit-size", working_dir, **options)


@cli.command(help="Score files by recent change frequency.")
@common_options
@click.option("--paths", multiple=True, help="Only include these paths (repeatable).")
@click.option("--max-commits", type=int, help="Limit to the newest N non-merge commits.")
@click.option("--ascending", is_flag=True, default=None, help="Sort scores ascending.")
@click.option("--descending", is_flag=True, default=None, help="Sort scores descending.")
@click.option("--path-only", is_flag=True, default=None, help="Only print file paths.")
@click.option("--age-exponent", type=float, help="Exponent of the age decay (default: 2.0).")
@click.option("--size-ref", type=float, help="Reference blob size in bytes (default: 1024).")
@click.option("--now", type=int, help="Reference time as seconds since the epoch.")
@click.pass_context
def frecency(ctx, working_dir, **options):
    if options.get("ascending") and options.get("descending"):
        raise click.UsageError("--ascending and --descending are mutually exclusive")
    options["paths"] = list(options["paths"]) or None
    run_command(ctx, "frecency", working_dir, **options)


@cli.command(help="Summarize code ownership by directory.")
@common_options
@click.option("--path", help="Only include paths matching this glob.")
@click.option(
    "--depth",
    type=int,
    help="Number of path segments to group by (default: 1). Use 0 to group "
    "all files together.",
)
@click.pass_context
def ownership(ctx, working_dir, **options):
    run_command(ctx, "ownership", working_dir, **options)


@cli.command(help="Longest streak of consecutive commit days per author.")
@common_options
@click.pass_context
def streaks(ctx, working_dir, **options):
    run_command(ctx, "streaks", working_dir, **options)


@cli.command("time-of-day", help="Histogram of commit times across the day.")
@common_options
@click.option("--bins", type=int, help="Number of bins for the 24h day (default: 24).")
@click.pass_context
def time_of_day(ctx, working_dir, **options):
    run_command(ctx, "time-of-day", working_dir, **options)


@cli.command(help="Estimate time spent on repository work.")
@common_options
@click.option(
    "-b", "--no-bots", is_flag=True, default=None,
    help="Ignore authors whose name contains '[bot]'.",
)
@click.option(
    "-p", "--show-pii", is_flag=True, default=None,
    help="Show per-author names, emails and hours.",
)
@click.option(
    "-f", "--file-stats", is_flag=True, default=None,
    help="Count files added, removed and modified.",
)
@click.option(
    "-l", "--line-stats", is_flag=True, default=None,
    help="Count lines added and removed.",
)
@click.option(
    "-i", "--omit-unify-identities", is_flag=True, default=None,
    help="Do not merge identities that share an author name; the same person "
    "may then appear once per email address.",
)
@click.pass_context
def hours(ctx, working_dir, **options):
    run_command(ctx, "hours", working_dir, **options)


@cli.command(help="Run every analysis in one walk and export JSON reports.")
@common_options
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: git_cadence_output_TIMESTAMP)",
)
@click.pass_context
def report(ctx, working_dir, output, **options):
    resolver, reporter = _resolvers(ctx, "report", working_dir, options)
    output_dir = output or "git_cadence_output_{}".format(
        datetime.now().strftime("%Y%m%d_%H%M%S")
    )

    try:
        with _profiling(resolver):
            with CommitHistoryAnalyzer(
                working_dir, reporter, memory_limit_mb=resolver.get("memory_limit")
            ) as analyzer:
                config_path = resolver.config_path
                cli_args = dict(ctx.obj or {})
                cli_args.update(options)
                cli_args.pop("config", None)
                for command, build in AGGREGATOR_BUILDERS.items():
                    command_resolver = ConfigResolver(
                        cli_args, config_path, command, working_dir
                    )
                    analyzer.add_aggregator(build(analyzer, command_resolver, reporter))

                start_spec = resolver.get("until") or resolver.get("rev_spec", "HEAD")
                analyzer.analyze(start_spec, resolver.get("since"))

                reporter.stage_start("Export", f"Writing reports to {output_dir}")
                os.makedirs(output_dir, exist_ok=True)
                datasets = {}
                for aggregator in analyzer.aggregators:
                    file_name = f"{aggregator.name}.json"
                    aggregator.export(os.path.join(output_dir, file_name))
                    datasets[aggregator.name] = file_name
                manifest_path = generate_manifest(output_dir, analyzer, datasets)
                reporter.stage_complete("Export", {"Manifest": manifest_path})
                reporter.success(f"Exported {len(datasets)} reports to {output_dir}")
    except (CadenceError, MemoryError) as e:
        reporter.error(str(e))
        ctx.exit(1)

    reporter.summary(
        {
            "Repository": analyzer.repo_path,
            "Output directory": output_dir,
            "Commits walked": f"{analyzer.metrics.commits_walked:,}",
            "Reports": len(datasets),
        }
    )
    click.echo(manifest_path)


if __name__ == "__main__":
    cli()
