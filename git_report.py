#!/usr/bin/env python3
"""
Git Report - Repository History Analyzer (v1.0.0)

Walks the commit graph of a local git repository and aggregates it into a
report for rendering:
- Commit activity over time (day, week or month buckets, UTC)
- Changed lines per language, plus the language composition of the tree
- Per-contributor totals and monthly activity

The walker reads commits sequentially and hands them to a bounded worker pool
through a bounded queue. Each worker diffs its commits and records them into a
private aggregator; the partial aggregates are merged once all work is done.

Results are exported as JSON (git_report.json) and a Markdown summary
(git_report.md).
"""

import heapq
import json
import os
import queue
import subprocess
import sys
import threading
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

import click
import colorama
import psutil
import yaml
from colorama import Fore, Style
from tqdm import tqdm

# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

UNKNOWN_LANGUAGE = "Unknown"
UNKNOWN_AUTHOR = "unknown"
GRANULARITIES = ("day", "week", "month")

# Seconds a blocked queue operation waits before re-checking abort/cancel flags
_POLL_INTERVAL = 0.1


# ============================================================================
# ERRORS
# ============================================================================


class GitReportError(Exception):
    """Base exception for git-report errors."""

    pass


class RepositoryOpenError(GitReportError):
    """Path does not exist or is not a git repository."""

    pass


class RepositoryReadError(GitReportError):
    """A commit or object could not be read from the repository."""

    def __init__(self, object_id: str, reason: str):
        super().__init__(f"Cannot read {object_id}: {reason}")
        self.object_id = object_id
        self.reason = reason


class ProgrammingError(GitReportError):
    """A core invariant was violated by the caller (e.g. record after finalize)."""

    pass


class AnalysisCancelled(GitReportError):
    """The analysis was cancelled; no report is produced."""

    pass


# ============================================================================
# DATA MODEL
# ============================================================================


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


# Status letters from `git diff-tree --raw`. Copies create a new file.
_STATUS_KINDS = {
    "A": ChangeKind.ADDED,
    "C": ChangeKind.ADDED,
    "D": ChangeKind.DELETED,
    "M": ChangeKind.MODIFIED,
    "T": ChangeKind.MODIFIED,
    "R": ChangeKind.RENAMED,
}


@dataclass(frozen=True)
class FileChange:
    """
    The delta one commit introduced to one file.

    For deletions `path` is the path that existed before the commit; for
    renames and copies `old_path` holds the source path.
    """

    path: str
    lines_added: int = 0
    lines_removed: int = 0
    kind: ChangeKind = ChangeKind.MODIFIED
    old_path: Optional[str] = None
    binary: bool = False

    @property
    def is_pure_rename(self) -> bool:
        return (
            self.kind is ChangeKind.RENAMED
            and self.lines_added == 0
            and self.lines_removed == 0
        )


@dataclass(frozen=True)
class Commit:
    """A commit read from the repository. Timestamp is always UTC-aware."""

    sha: str
    parents: Tuple[str, ...]
    author_name: str
    author_email: str
    timestamp: datetime
    subject: str = ""
    changes: Tuple[FileChange, ...] = ()

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def is_root(self) -> bool:
        return not self.parents

    def with_changes(self, changes: Iterable[FileChange]) -> "Commit":
        return replace(self, changes=tuple(changes))


# ============================================================================
# REPOSITORY READER (git CLI)
# ============================================================================


def _parse_identity(object_id: str, line: str) -> Tuple[str, str, datetime]:
    """
    Parse an `author` header value: 'Name <email> 1700000000 +0100'.

    Returns:
        (name, email, UTC timestamp)
    """
    head, sep, tail = line.rpartition(">")
    if not sep:
        raise RepositoryReadError(object_id, f"malformed identity: {line!r}")
    name, _, email = head.partition("<")
    fields = tail.split()
    try:
        timestamp = datetime.fromtimestamp(int(fields[0]), timezone.utc)
    except (IndexError, ValueError, OverflowError, OSError):
        raise RepositoryReadError(object_id, f"malformed timestamp: {line!r}")
    return name.strip(), email.strip(), timestamp


def parse_commit_object(sha: str, body: bytes) -> Commit:
    """Parse the raw bytes of a commit object as printed by `git cat-file`."""
    text = body.decode("utf-8", errors="replace")
    headers, _, message = text.partition("\n\n")

    parents: List[str] = []
    author: Optional[str] = None
    for line in headers.split("\n"):
        # Continuation lines (gpgsig, mergetag) start with a space
        if line.startswith("parent "):
            parents.append(line[len("parent ") :].strip())
        elif line.startswith("author "):
            author = line[len("author ") :]

    if author is None:
        raise RepositoryReadError(sha, "commit has no author header")

    name, email, timestamp = _parse_identity(sha, author)
    message = message.strip()
    subject = message.split("\n", 1)[0] if message else ""
    return Commit(
        sha=sha,
        parents=tuple(parents),
        author_name=name,
        author_email=email,
        timestamp=timestamp,
        subject=subject,
    )


def _parse_count(value: str) -> Tuple[int, bool]:
    # numstat prints '-' for binary files
    if value == "-":
        return 0, True
    return int(value), False


def parse_diff_tree(output: bytes) -> List[FileChange]:
    """
    Parse `git diff-tree -r -M --raw --numstat -z` output into FileChanges.

    Raw entries (`:<modes> <shas> <status>\\0<path>\\0`, renames and copies
    carrying two paths) give the change kind; numstat entries
    (`<added>\\t<removed>\\t<path>\\0`, or an empty path followed by
    `<old>\\0<new>\\0` for renames) give the line counts.

    Raises:
        ValueError: If the output is not in the expected format
    """
    tokens = output.decode("utf-8", errors="replace").split("\0")
    statuses: Dict[str, Tuple[str, Optional[str]]] = {}
    counts: Dict[str, Tuple[int, int, bool]] = {}

    i = 0
    while i < len(tokens):
        token = tokens[i]
        if not token:
            i += 1
            continue

        if token.startswith(":"):
            status = token.split()[-1]
            if status[0] in "RC":
                old_path, path = tokens[i + 1], tokens[i + 2]
                i += 3
            else:
                old_path, path = None, tokens[i + 1]
                i += 2
            statuses[path] = (status[0], old_path)
            continue

        parts = token.split("\t", 2)
        if len(parts) != 3:
            raise ValueError(f"unexpected diff-tree entry: {token[:80]!r}")
        added_str, removed_str, path = parts
        if path == "":
            path = tokens[i + 2]
            i += 3
        else:
            i += 1
        added, binary = _parse_count(added_str)
        removed, _ = _parse_count(removed_str)
        counts[path] = (added, removed, binary)

    changes = []
    for path, (letter, old_path) in statuses.items():
        kind = _STATUS_KINDS.get(letter)
        if kind is None:
            continue
        added, removed, binary = counts.get(path, (0, 0, False))
        changes.append(
            FileChange(
                path=path,
                lines_added=added,
                lines_removed=removed,
                kind=kind,
                old_path=old_path,
                binary=binary,
            )
        )

    for path, (added, removed, binary) in counts.items():
        if path not in statuses:
            changes.append(
                FileChange(path=path, lines_added=added, lines_removed=removed, binary=binary)
            )

    return changes


def parse_combined_diff(output: bytes, parent_count: int) -> List[FileChange]:
    """
    Count the lines a merge introduced from `git diff-tree --cc` output.

    Combined diffs carry one marker column per parent. Only lines marked '+'
    (or '-') against every parent were written by the merge itself; lines
    taken from one side are ignored. Files without such lines are dropped.
    """
    changes = []
    added_marker = "+" * parent_count
    removed_marker = "-" * parent_count
    hunk_marker = "@" * (parent_count + 1) + " "

    path: Optional[str] = None
    kind = ChangeKind.MODIFIED
    added = removed = 0
    in_hunk = False

    def flush():
        if path is not None and (added or removed):
            changes.append(FileChange(path=path, lines_added=added, lines_removed=removed, kind=kind))

    for line in output.decode("utf-8", errors="replace").split("\n"):
        if line.startswith("diff --cc ") or line.startswith("diff --combined "):
            flush()
            path = line.split(" ", 2)[2]
            if path.startswith('"') and path.endswith('"'):
                path = path[1:-1]
            kind = ChangeKind.MODIFIED
            added = removed = 0
            in_hunk = False
        elif not in_hunk:
            if line.startswith("new file mode"):
                kind = ChangeKind.ADDED
            elif line.startswith("deleted file mode"):
                kind = ChangeKind.DELETED
            elif line.startswith(hunk_marker):
                in_hunk = True
        elif line.startswith(hunk_marker):
            continue
        elif line.startswith(added_marker):
            added += 1
        elif line.startswith(removed_marker):
            removed += 1
    flush()
    return changes


def open_repository(path: str) -> "GitRepository":
    """
    Open a local git repository for reading.

    Raises:
        RepositoryOpenError: If the path does not exist or is not a git repository
    """
    if not os.path.exists(path):
        raise RepositoryOpenError(f"Path does not exist: {path}")
    if not os.path.isdir(path):
        raise RepositoryOpenError(f"Not a directory: {path}")

    try:
        result = subprocess.run(
            ["git", "-C", path, "rev-parse", "--is-bare-repository", "--show-toplevel"],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise RepositoryOpenError("git executable not found on PATH") from e

    lines = result.stdout.split("\n")
    if result.returncode != 0 and not (lines and lines[0] == "true"):
        raise RepositoryOpenError(f"Not a git repository: {path}")

    if lines[0] == "true":
        return GitRepository(path)
    return GitRepository(lines[1].strip() or path)


class GitRepository:
    """
    Read-only access to a local repository through the git CLI.

    Commit objects come from one long-running `git cat-file --batch` process
    (guarded by a lock); diffs and tree scans run one git command each, so
    they can be issued from several worker threads at once.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._reader: Optional[subprocess.Popen] = None
        self._reader_lock = threading.Lock()
        self._shallow: Optional[FrozenSet[str]] = None

    def __enter__(self) -> "GitRepository":
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        with self._reader_lock:
            self._discard_reader()

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(["git", "-C", self.path, *args], capture_output=True)

    # ----------------------------------------------------------------- refs

    def resolve(self, ref: str) -> str:
        """Resolve a ref to a full commit id."""
        result = self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if result.returncode != 0:
            raise RepositoryReadError(ref, "does not name a commit")
        return result.stdout.decode("ascii", errors="replace").strip()

    def is_empty(self) -> bool:
        result = self._run("rev-list", "-n", "1", "--all")
        return not result.stdout.strip()

    def branch_refs(self) -> List[str]:
        """Local branches and remote-tracking branches, without symbolic HEADs."""
        result = self._run(
            "for-each-ref", "--format=%(refname)", "refs/heads", "refs/remotes"
        )
        if result.returncode != 0:
            raise RepositoryReadError("refs", result.stderr.decode(errors="replace").strip())
        refs = result.stdout.decode("utf-8", errors="replace").split("\n")
        return [ref for ref in refs if ref and not ref.endswith("/HEAD")]

    def count_commits(self, tips: Sequence[str]) -> Optional[int]:
        """Commits reachable from the tips, or None when git cannot count them."""
        if not tips:
            return 0
        result = self._run("rev-list", "--count", *tips)
        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    # -------------------------------------------------------------- commits

    def _discard_reader(self):
        if self._reader is None:
            return
        reader, self._reader = self._reader, None
        try:
            reader.stdin.close()
        except OSError:
            pass
        try:
            reader.wait(timeout=5)
        except subprocess.TimeoutExpired:
            reader.kill()
            reader.wait()
        reader.stdout.close()

    def _object_reader(self) -> subprocess.Popen:
        if self._reader is None or self._reader.poll() is not None:
            self._discard_reader()
            self._reader = subprocess.Popen(
                ["git", "-C", self.path, "cat-file", "--batch"],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        return self._reader

    def read_commit(self, sha: str) -> Commit:
        """
        Read one commit object (without its diff).

        Raises:
            RepositoryReadError: If the object is missing, corrupt or not a commit
        """
        with self._reader_lock:
            reader = self._object_reader()
            try:
                reader.stdin.write(sha.encode("utf-8") + b"\n")
                reader.stdin.flush()
                header = reader.stdout.readline()
            except (OSError, ValueError) as e:
                self._discard_reader()
                raise RepositoryReadError(sha, f"object reader failed: {e}") from e

            if not header:
                # git died on a corrupt object; start a fresh reader next time
                self._discard_reader()
                raise RepositoryReadError(sha, "object is unreadable")

            fields = header.decode("utf-8", errors="replace").split()
            if len(fields) != 3:
                raise RepositoryReadError(sha, " ".join(fields[1:]) or "object is unreadable")

            object_id, object_type, size = fields[0], fields[1], int(fields[2])
            body = reader.stdout.read(size + 1)
            if len(body) != size + 1:
                self._discard_reader()
                raise RepositoryReadError(sha, "truncated object")

        if object_type != "commit":
            raise RepositoryReadError(sha, f"expected a commit, found a {object_type}")
        commit = parse_commit_object(object_id, body[:size])
        if commit.parents and commit.sha in self.shallow_commits():
            # Parents of a shallow boundary were never fetched
            commit = replace(commit, parents=())
        return commit

    def shallow_commits(self) -> FrozenSet[str]:
        """Boundary commits of a shallow clone (empty for a full clone)."""
        if self._shallow is None:
            result = self._run("rev-parse", "--git-path", "shallow")
            path = result.stdout.decode("utf-8", errors="replace").strip()
            if path and not os.path.isabs(path):
                path = os.path.join(self.path, path)
            shallow: FrozenSet[str] = frozenset()
            if result.returncode == 0 and path and os.path.isfile(path):
                with open(path, "r", encoding="ascii", errors="replace") as f:
                    shallow = frozenset(line.strip() for line in f if line.strip())
            self._shallow = shallow
        return self._shallow

    def log_from(self, ref: str) -> Iterator[Commit]:
        """Lazily yield every commit reachable from `ref` exactly once."""
        walker = HistoryWalker(self, TraversalContext())
        return walker.walk([self.resolve(ref)])

    def diff(self, commit: Commit) -> List[FileChange]:
        """
        Changes introduced by `commit` relative to its parent.

        For a merge only the lines that differ from every parent are reported
        (conflict resolutions, edits made while merging). Everything else
        already arrived through the commits on the merged branches, so a clean
        merge reports no changes.
        """
        if commit.is_merge:
            return self._merge_diff(commit)
        result = self._run(
            "diff-tree",
            "-r",
            "-M",
            "--root",
            "--no-commit-id",
            "--raw",
            "--numstat",
            "-z",
            commit.sha,
        )
        if result.returncode != 0:
            raise RepositoryReadError(
                commit.sha, result.stderr.decode(errors="replace").strip() or "diff failed"
            )
        try:
            return parse_diff_tree(result.stdout)
        except (ValueError, IndexError) as e:
            raise RepositoryReadError(commit.sha, f"unparseable diff output: {e}") from e

    def _merge_diff(self, commit: Commit) -> List[FileChange]:
        result = self._run(
            "-c",
            "core.quotepath=off",
            "diff-tree",
            "--cc",
            "--no-commit-id",
            "--no-color",
            "--no-ext-diff",
            commit.sha,
        )
        if result.returncode != 0:
            raise RepositoryReadError(
                commit.sha, result.stderr.decode(errors="replace").strip() or "diff failed"
            )
        return parse_combined_diff(result.stdout, len(commit.parents))

    # ----------------------------------------------------------------- tree

    def tree_entries(self, sha: str) -> Dict[str, int]:
        """Blob paths in the commit's tree mapped to their size in bytes."""
        result = self._run("ls-tree", "-r", "-l", "-z", "--full-tree", sha)
        if result.returncode != 0:
            raise RepositoryReadError(sha, result.stderr.decode(errors="replace").strip())

        entries = {}
        for entry in result.stdout.decode("utf-8", errors="replace").split("\0"):
            if not entry:
                continue
            meta, _, path = entry.partition("\t")
            mode, object_type, _, size = meta.split()
            # Skip submodules and symlinks
            if object_type != "blob" or mode == "120000":
                continue
            entries[path] = int(size)
        return entries

    def line_counts(self, sha: str) -> Dict[str, int]:
        """Line counts of the text files in the commit's tree."""
        result = self._run("grep", "-I", "-c", "-z", "-e", "", sha, "--")
        # git grep exits 1 when nothing matched (e.g. only binary files)
        if result.returncode not in (0, 1):
            raise RepositoryReadError(sha, result.stderr.decode(errors="replace").strip())

        prefix = f"{sha}:"
        counts = {}
        for line in result.stdout.decode("utf-8", errors="replace").split("\n"):
            if not line:
                continue
            name, sep, count = line.partition("\0")
            if not sep:
                name, _, count = line.rpartition(":")
            if name.startswith(prefix):
                name = name[len(prefix) :]
            counts[name] = int(count)
        return counts

    def language_snapshot(self, sha: str, classifier: "LanguageClassifier") -> List["LanguageShare"]:
        return scan_language_composition(self, sha, classifier)


# ============================================================================
# LANGUAGE CLASSIFIER
# ============================================================================

DEFAULT_LANGUAGES: Mapping[str, str] = MappingProxyType(
    {
        ".rs": "Rust",
        ".py": "Python",
        ".pyi": "Python",
        ".pyx": "Cython",
        ".ipynb": "Jupyter Notebooks",
        ".js": "JavaScript",
        ".mjs": "JavaScript",
        ".cjs": "JavaScript",
        ".jsx": "JSX",
        ".ts": "TypeScript",
        ".d.ts": "TypeScript",
        ".tsx": "TSX",
        ".vue": "Vue",
        ".svelte": "Svelte",
        ".java": "Java",
        ".kt": "Kotlin",
        ".kts": "Kotlin",
        ".scala": "Scala",
        ".groovy": "Groovy",
        ".gradle": "Gradle",
        ".go": "Go",
        ".c": "C",
        ".h": "C Header",
        ".cc": "C++",
        ".cpp": "C++",
        ".cxx": "C++",
        ".hpp": "C++ Header",
        ".hh": "C++ Header",
        ".cs": "C#",
        ".fs": "F#",
        ".m": "Objective-C",
        ".mm": "Objective-C++",
        ".swift": "Swift",
        ".rb": "Ruby",
        ".erb": "ERB",
        ".html.erb": "ERB",
        ".php": "PHP",
        ".blade.php": "Blade",
        ".pl": "Perl",
        ".pm": "Perl",
        ".lua": "Lua",
        ".r": "R",
        ".jl": "Julia",
        ".hs": "Haskell",
        ".ml": "OCaml",
        ".ex": "Elixir",
        ".exs": "Elixir",
        ".erl": "Erlang",
        ".clj": "Clojure",
        ".dart": "Dart",
        ".zig": "Zig",
        ".nim": "Nim",
        ".sh": "Shell",
        ".bash": "Bash",
        ".zsh": "Zsh",
        ".fish": "Fish",
        ".ps1": "PowerShell",
        ".bat": "Batch",
        ".sql": "SQL",
        ".html": "HTML",
        ".htm": "HTML",
        ".css": "CSS",
        ".scss": "Sass",
        ".sass": "Sass",
        ".less": "LESS",
        ".md": "Markdown",
        ".markdown": "Markdown",
        ".rst": "ReStructuredText",
        ".tex": "TeX",
        ".txt": "Plain Text",
        ".json": "JSON",
        ".yaml": "YAML",
        ".yml": "YAML",
        ".toml": "TOML",
        ".ini": "INI",
        ".cfg": "INI",
        ".xml": "XML",
        ".svg": "SVG",
        ".proto": "Protocol Buffers",
        ".graphql": "GraphQL",
        ".tf": "HCL",
        ".nix": "Nix",
        ".cmake": "CMake",
        ".mk": "Makefile",
        ".dockerfile": "Dockerfile",
    }
)

# Exact file names, compared case-insensitively
FILENAME_LANGUAGES: Mapping[str, str] = MappingProxyType(
    {
        "makefile": "Makefile",
        "gnumakefile": "Makefile",
        "dockerfile": "Dockerfile",
        "containerfile": "Dockerfile",
        "cmakelists.txt": "CMake",
        "gemfile": "Ruby",
        "rakefile": "Ruby",
        "justfile": "Just",
        ".bashrc": "Bash",
        ".zshrc": "Zsh",
    }
)


class LanguageClassifier:
    """
    Map file paths to language labels.

    Exact file names win, then the longest known extension (so `types.d.ts`
    matches `.d.ts` before `.ts`). Anything else is UNKNOWN_LANGUAGE. The
    tables are read-only, so one classifier can be shared between threads.
    """

    def __init__(self, extra: Optional[Mapping[str, str]] = None):
        extensions = dict(DEFAULT_LANGUAGES)
        filenames = dict(FILENAME_LANGUAGES)
        for key, label in (extra or {}).items():
            key = str(key).lower()
            if key.startswith("."):
                extensions[key] = str(label)
            else:
                filenames[key] = str(label)
        self._extensions = MappingProxyType(extensions)
        self._filenames = MappingProxyType(filenames)

    def classify(self, path: str) -> str:
        name = path.replace("\\", "/").rsplit("/", 1)[-1].lower()
        if name in self._filenames:
            return self._filenames[name]

        # A leading dot marks a hidden file, not an extension
        for index, char in enumerate(name):
            if char == "." and index > 0:
                label = self._extensions.get(name[index:])
                if label is not None:
                    return label
        return UNKNOWN_LANGUAGE


# ============================================================================
# HISTORY WALKER
# ============================================================================


class TraversalContext:
    """
    Traversal state for one analysis run. Only the walker mutates it.

    `visited` holds the commits that were read, so after a full walk without a
    date filter its size equals the report's total commits. Ids that could not
    be read are kept apart in `unreadable`.
    """

    def __init__(self):
        self.visited: Set[str] = set()
        self.unreadable: Set[str] = set()
        self.commits_yielded = 0
        self.warnings: List[str] = []

    def seen(self, sha: str) -> bool:
        return sha in self.visited or sha in self.unreadable

    def record_unreadable(self, sha: str, error: RepositoryReadError):
        self.unreadable.add(sha)
        self.warnings.append(
            f"Unreadable commit {error.object_id} ({error.reason}); "
            "history below it was skipped"
        )


class HistoryWalker:
    """
    Yield every readable commit reachable from a set of tips exactly once.

    Commits come out newest first (by author time, ties broken by id), which
    puts children before their parents unless clocks are skewed. An unreadable
    commit ends its branch and is recorded as a warning; its ancestors are still
    reached through any other path that leads to them.
    """

    def __init__(
        self,
        repository,
        context: TraversalContext,
        cancel_event: Optional[threading.Event] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ):
        self.repository = repository
        self.context = context
        self.cancel_event = cancel_event
        self.since = since
        self.until = until

    def walk(self, tips: Iterable[str]) -> Iterator[Commit]:
        frontier: List[Tuple[float, str, Commit]] = []
        for sha in tips:
            self._push(frontier, sha)

        while frontier:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise AnalysisCancelled("Analysis cancelled during history walk")

            _, _, commit = heapq.heappop(frontier)
            for parent in commit.parents:
                self._push(frontier, parent)

            if self._in_range(commit):
                self.context.commits_yielded += 1
                yield commit

    def _push(self, frontier: List[Tuple[float, str, Commit]], sha: str):
        if self.context.seen(sha):
            return
        try:
            commit = self.repository.read_commit(sha)
        except RepositoryReadError as e:
            self.context.record_unreadable(sha, e)
            return
        if commit.sha != sha and self.context.seen(commit.sha):
            return
        self.context.visited.add(commit.sha)
        heapq.heappush(frontier, (-commit.timestamp.timestamp(), commit.sha, commit))

    def _in_range(self, commit: Commit) -> bool:
        if self.since is not None and commit.timestamp < self.since:
            return False
        if self.until is not None and commit.timestamp >= self.until:
            return False
        return True


# ============================================================================
# REPORT MODEL
# ============================================================================


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ActivityBucket:
    start: date
    commits: int
    lines_added: int
    lines_removed: int
    authors: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "commits": self.commits,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "authors": self.authors,
        }


@dataclass(frozen=True)
class ContributorStats:
    key: str
    name: str
    email: str
    commits: int
    lines_added: int
    lines_removed: int
    first_commit: datetime
    last_commit: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "email": self.email,
            "commits": self.commits,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "first_commit": _iso(self.first_commit),
            "last_commit": _iso(self.last_commit),
        }


@dataclass(frozen=True)
class LanguageStats:
    language: str
    lines_added: int
    lines_removed: int
    files_touched: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "files_touched": self.files_touched,
        }


@dataclass(frozen=True)
class LanguageShare:
    """Language composition of the tree at the analysed tip."""

    language: str
    files: int
    lines: int
    bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "files": self.files,
            "lines": self.lines,
            "bytes": self.bytes,
        }


@dataclass(frozen=True)
class AuthorPeriodActivity:
    """Commits by one contributor in one calendar month (YYYY-MM)."""

    author: str
    name: str
    period: str
    commits: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "name": self.name,
            "period": self.period,
            "commits": self.commits,
        }


@dataclass(frozen=True)
class Report:
    """
    Immutable snapshot of one analysis run, ready for rendering.

    Every view is stored as a tuple sorted on construction:
    - activity: by bucket start, ascending
    - contributors: by commits, then lines changed, descending
    - languages: by lines changed, descending
    - composition: by lines, descending
    """

    repository_path: str
    generated_at: datetime
    granularity: str
    total_commits: int
    total_file_changes: int
    refs: Tuple[str, ...] = ()
    first_commit: Optional[datetime] = None
    last_commit: Optional[datetime] = None
    activity: Tuple[ActivityBucket, ...] = ()
    contributors: Tuple[ContributorStats, ...] = ()
    languages: Tuple[LanguageStats, ...] = ()
    composition: Tuple[LanguageShare, ...] = ()
    author_activity: Tuple[AuthorPeriodActivity, ...] = ()
    warnings: Tuple[str, ...] = ()

    def __post_init__(self):
        views = {
            "refs": tuple(self.refs),
            "activity": sorted(self.activity, key=lambda b: b.start),
            "contributors": sorted(
                self.contributors,
                key=lambda c: (-c.commits, -(c.lines_added + c.lines_removed), c.key),
            ),
            "languages": sorted(
                self.languages,
                key=lambda s: (-(s.lines_added + s.lines_removed), s.language),
            ),
            "composition": sorted(
                self.composition, key=lambda s: (-s.lines, -s.bytes, s.language)
            ),
            "author_activity": sorted(
                self.author_activity, key=lambda a: (a.period, a.author)
            ),
            "warnings": sorted(self.warnings),
        }
        for name, value in views.items():
            object.__setattr__(self, name, tuple(value))

    @property
    def is_complete(self) -> bool:
        return not self.warnings

    def top_contributors(self, n: int = 10) -> Tuple[ContributorStats, ...]:
        return self.contributors[:n]

    def language(self, label: str) -> Optional[LanguageStats]:
        for stats in self.languages:
            if stats.language == label:
                return stats
        return None

    def to_dict(self, include_generated_at: bool = True) -> Dict[str, Any]:
        data = {
            "schema_version": SCHEMA_VERSION,
            "repository_path": self.repository_path,
            "refs": list(self.refs),
            "granularity": self.granularity,
            "total_commits": self.total_commits,
            "total_file_changes": self.total_file_changes,
            "first_commit": _iso(self.first_commit),
            "last_commit": _iso(self.last_commit),
            "complete": self.is_complete,
            "warnings": list(self.warnings),
            "activity": [b.to_dict() for b in self.activity],
            "contributors": [c.to_dict() for c in self.contributors],
            "languages": [s.to_dict() for s in self.languages],
            "composition": [s.to_dict() for s in self.composition],
            "author_activity": [a.to_dict() for a in self.author_activity],
        }
        if include_generated_at:
            data["generated_at"] = _iso(self.generated_at)
        return data


# ============================================================================
# AGGREGATOR
# ============================================================================


def bucket_start(timestamp: datetime, granularity: str = "day") -> date:
    """Floor a timestamp (converted to UTC) to the start of its bucket."""
    day = timestamp.astimezone(timezone.utc).date()
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    raise ValueError(f"Unknown granularity: {granularity!r} (expected one of {GRANULARITIES})")


def identity_key(name: str, email: str) -> str:
    """
    Contributor identity: lower-cased email, or the name when there is no email.

    The same person committing under two emails gets two keys.
    """
    email = (email or "").strip().lower()
    if email:
        return email
    return (name or "").strip() or UNKNOWN_AUTHOR


@dataclass(frozen=True)
class _CommitEntry:
    key: str
    name: str
    email: str
    timestamp: datetime


class Aggregator:
    """
    Accumulate (commit, file change, language) records into report views.

    Commit-level counters are derived from the distinct commit ids seen, so a
    commit is counted once no matter how many of its files are recorded, and
    the result does not depend on the order of `record` calls. Line totals are
    plain sums, so partial aggregators built by separate workers can be
    combined with `merge`.
    """

    def __init__(self, granularity: str = "day"):
        if granularity not in GRANULARITIES:
            raise ValueError(
                f"Unknown granularity: {granularity!r} (expected one of {GRANULARITIES})"
            )
        self.granularity = granularity
        self._lock = threading.Lock()
        self._finalized = False
        self._commits: Dict[str, _CommitEntry] = {}
        self._file_changes = 0
        self._bucket_lines: Dict[date, List[int]] = defaultdict(lambda: [0, 0])
        self._author_lines: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        self._language_lines: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        self._language_files: Dict[str, Set[str]] = defaultdict(set)

    def _ensure_open(self, operation: str):
        if self._finalized:
            raise ProgrammingError(f"Aggregator.{operation}() called after finalize()")

    def record(
        self,
        commit: Commit,
        change: Optional[FileChange] = None,
        language: Optional[str] = None,
    ):
        """
        Record one file change of a commit.

        Called once per (commit, file) pair. A commit without file changes
        (a merge, an empty commit) is recorded with `change=None` so it still
        counts toward activity and contributor totals.

        Raises:
            ProgrammingError: If called after finalize(), or a change is
                recorded without a language
        """
        with self._lock:
            self._ensure_open("record")
            if commit.sha not in self._commits:
                self._commits[commit.sha] = _CommitEntry(
                    key=identity_key(commit.author_name, commit.author_email),
                    name=commit.author_name,
                    email=commit.author_email,
                    timestamp=commit.timestamp,
                )
            if change is None:
                return
            if language is None:
                raise ProgrammingError(f"No language given for {change.path}")

            self._file_changes += 1
            # Pure renames count as a touch of the commit but move no lines
            if change.is_pure_rename:
                return

            entry = self._commits[commit.sha]
            bucket = bucket_start(commit.timestamp, self.granularity)
            for totals in (
                self._bucket_lines[bucket],
                self._author_lines[entry.key],
                self._language_lines[language],
            ):
                totals[0] += change.lines_added
                totals[1] += change.lines_removed
            self._language_files[language].add(change.path)

    def merge(self, other: "Aggregator"):
        """Fold a partial aggregate built from a disjoint set of commits into this one."""
        if other is self:
            raise ProgrammingError("Cannot merge an aggregator into itself")
        if other.granularity != self.granularity:
            raise ProgrammingError(
                f"Cannot merge {other.granularity!r} buckets into {self.granularity!r}"
            )
        with self._lock, other._lock:
            self._ensure_open("merge")
            other._ensure_open("merge")
            for sha, entry in other._commits.items():
                self._commits.setdefault(sha, entry)
            self._file_changes += other._file_changes
            for target, source in (
                (self._bucket_lines, other._bucket_lines),
                (self._author_lines, other._author_lines),
                (self._language_lines, other._language_lines),
            ):
                for key, (added, removed) in source.items():
                    target[key][0] += added
                    target[key][1] += removed
            for language, paths in other._language_files.items():
                self._language_files[language] |= paths

    def finalize(
        self,
        repository_path: str = "",
        refs: Sequence[str] = (),
        warnings: Sequence[str] = (),
        composition: Sequence[LanguageShare] = (),
        generated_at: Optional[datetime] = None,
    ) -> Report:
        """
        Build the immutable Report. Only valid once; further record(),
        merge() or finalize() calls raise ProgrammingError.
        """
        with self._lock:
            self._ensure_open("finalize")
            self._finalized = True

            bucket_commits: Counter = Counter()
            bucket_authors: Dict[date, Set[str]] = defaultdict(set)
            author_commits: Counter = Counter()
            author_first: Dict[str, datetime] = {}
            author_last: Dict[str, Tuple[datetime, str, _CommitEntry]] = {}
            author_months: Counter = Counter()

            for sha, entry in self._commits.items():
                bucket = bucket_start(entry.timestamp, self.granularity)
                bucket_commits[bucket] += 1
                bucket_authors[bucket].add(entry.key)

                author_commits[entry.key] += 1
                first = author_first.get(entry.key)
                if first is None or entry.timestamp < first:
                    author_first[entry.key] = entry.timestamp
                latest = author_last.get(entry.key)
                if latest is None or (entry.timestamp, sha) > latest[:2]:
                    author_last[entry.key] = (entry.timestamp, sha, entry)

                month = entry.timestamp.astimezone(timezone.utc).strftime("%Y-%m")
                author_months[(entry.key, month)] += 1

            activity = []
            for bucket in set(bucket_commits) | set(self._bucket_lines):
                added, removed = self._bucket_lines.get(bucket, (0, 0))
                activity.append(
                    ActivityBucket(
                        start=bucket,
                        commits=bucket_commits[bucket],
                        lines_added=added,
                        lines_removed=removed,
                        authors=len(bucket_authors[bucket]),
                    )
                )

            contributors = []
            for key, count in author_commits.items():
                last_time, _, latest_entry = author_last[key]
                added, removed = self._author_lines.get(key, (0, 0))
                contributors.append(
                    ContributorStats(
                        key=key,
                        name=latest_entry.name,
                        email=latest_entry.email,
                        commits=count,
                        lines_added=added,
                        lines_removed=removed,
                        first_commit=author_first[key],
                        last_commit=last_time,
                    )
                )

            languages = [
                LanguageStats(
                    language=language,
                    lines_added=added,
                    lines_removed=removed,
                    files_touched=len(self._language_files[language]),
                )
                for language, (added, removed) in self._language_lines.items()
            ]

            author_activity = [
                AuthorPeriodActivity(
                    author=key, name=author_last[key][2].name, period=month, commits=count
                )
                for (key, month), count in author_months.items()
            ]

            timestamps = [entry.timestamp for entry in self._commits.values()]
            return Report(
                repository_path=repository_path,
                generated_at=generated_at or datetime.now(timezone.utc),
                granularity=self.granularity,
                total_commits=len(self._commits),
                total_file_changes=self._file_changes,
                refs=tuple(refs),
                first_commit=min(timestamps) if timestamps else None,
                last_commit=max(timestamps) if timestamps else None,
                activity=tuple(activity),
                contributors=tuple(contributors),
                languages=tuple(languages),
                composition=tuple(composition),
                author_activity=tuple(author_activity),
                warnings=tuple(warnings),
            )


def scan_language_composition(
    repository, sha: str, classifier: LanguageClassifier
) -> List[LanguageShare]:
    """Count files, lines and bytes per language in the tree of one commit."""
    sizes = repository.tree_entries(sha)
    lines = repository.line_counts(sha)

    totals: Dict[str, List[int]] = defaultdict(lambda: [0, 0, 0])
    for path, size in sizes.items():
        stats = totals[classifier.classify(path)]
        stats[0] += 1
        stats[1] += lines.get(path, 0)
        stats[2] += size

    return [
        LanguageShare(language=language, files=files, lines=line_count, bytes=size)
        for language, (files, line_count, size) in totals.items()
    ]


# ============================================================================
# CONSOLE OUTPUT & PERFORMANCE MONITORING
# ============================================================================


class ProgressReporter:
    """
    Console output for a run.

    Stage banners, notices and the closing summary go to stdout and are
    silenced by ``quiet``. Errors go to stderr regardless. Stage statistics
    and the summary body are shown only with ``verbose``.
    """

    RULE_WIDTH = 70

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self._stage_clock: Dict[str, float] = {}

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Style.RESET_ALL}" if self.use_colors else text

    def _emit(self, text: str = "", stream=None):
        if stream is None and self.quiet:
            return
        print(text, file=stream or sys.stdout)

    def _rule(self) -> str:
        return self._paint("=" * self.RULE_WIDTH, Fore.CYAN)

    def _details(self, items: Dict[str, Any]):
        for key, value in items.items():
            self._emit(f"   {key}: {value}")

    def stage_start(self, stage_name: str, message: str = ""):
        self._stage_clock[stage_name] = time.time()
        self._emit()
        self._emit(self._rule())
        self._emit(self._paint(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            self._emit(f"   {message}")
        self._emit(self._rule())

    def stage_complete(self, stage_name: str, stats: Optional[Dict[str, Any]] = None):
        started = self._stage_clock.pop(stage_name, None)
        took = time.time() - started if started is not None else 0.0
        self._emit(
            self._paint(f"✅ {stage_name} complete ({took:.2f}s)", Fore.GREEN + Style.BRIGHT)
        )
        if stats and self.verbose:
            self._details(stats)

    def create_progress_bar(
        self, total: Optional[int], desc: str = "Processing"
    ) -> Optional[tqdm]:
        """A tqdm bar counting commits, or None when output is silenced."""
        if self.quiet:
            return None
        return tqdm(
            total=total, desc=self._paint(desc, Fore.CYAN), unit=" commits", ncols=100
        )

    def info(self, message: str):
        self._emit(self._paint("ℹ️  ", Fore.BLUE) + message)

    def warning(self, message: str):
        self._emit(self._paint("⚠️  ", Fore.YELLOW + Style.BRIGHT) + message)

    def list_warnings(self, warnings: Sequence[str], limit: int = 20):
        """Print the first ``limit`` warnings and a count of the rest."""
        for message in warnings[:limit]:
            self.warning(message)
        hidden = len(warnings) - limit
        if hidden > 0:
            self.warning(f"... and {hidden} more (see git_report.md)")

    def error(self, message: str):
        self._emit(self._paint(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT), sys.stderr)

    def success(self, message: str):
        self._emit(self._paint(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        self._emit()
        self._emit(self._rule())
        self._emit(self._paint("📊 REPORT SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        self._emit(self._rule())
        self._details(stats)
        self._emit()
        self._emit(
            self._paint(f"⏱️  Total time: {time.time() - self.start_time:.2f}s", Fore.YELLOW)
        )
        self._emit(self._rule())


class MemoryMonitor:
    """Resident memory of this process, with an optional ceiling in MB."""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self._process = psutil.Process(os.getpid())

    def sample(self) -> float:
        current = self._process.memory_info().rss / (1024 * 1024)
        self.peak_mb = max(self.peak_mb, current)
        return current

    def check_memory(self) -> float:
        """Sample memory and raise MemoryError above the ceiling."""
        current = self.sample()
        if self.limit_mb and current > self.limit_mb:
            raise MemoryError(
                f"Memory limit exceeded: {current:.1f}MB > {self.limit_mb}MB"
            )
        return current


@dataclass
class AnalysisMetrics:
    """Run statistics shown in the CLI summary."""

    commits_processed: int = 0
    commits_visited: int = 0
    file_changes: int = 0
    warnings: int = 0
    workers: int = 1
    batches: int = 0
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits_processed": self.commits_processed,
            "commits_visited": self.commits_visited,
            "file_changes": self.file_changes,
            "warnings": self.warnings,
            "workers": self.workers,
            "batches": self.batches,
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


# ============================================================================
# ANALYSIS PIPELINE
# ============================================================================


class HistoryAnalysis:
    """
    One analysis run: walk, diff, classify, aggregate, finalize.

    The walker runs in the calling thread and feeds batches of commits into a
    bounded queue. A pool of worker threads drains the queue; each worker diffs
    its commits through the repository, classifies every change and records it
    into a private Aggregator. Workers never see the traversal context. When
    the walk is done the partial aggregates are merged and finalized.

    Cancellation (via `cancel_event`) is checked by the walker at every commit
    and by the workers at every batch. A cancelled run raises
    AnalysisCancelled and produces no report.
    """

    def __init__(
        self,
        repository,
        classifier: Optional[LanguageClassifier] = None,
        granularity: str = "day",
        workers: int = 4,
        batch_size: int = 64,
        queue_size: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        snapshot: bool = True,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
        memory_limit_mb: Optional[float] = None,
    ):
        if granularity not in GRANULARITIES:
            raise ValueError(
                f"Unknown granularity: {granularity!r} (expected one of {GRANULARITIES})"
            )
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.repository = repository
        self.classifier = classifier or LanguageClassifier()
        self.granularity = granularity
        self.workers = workers
        self.batch_size = batch_size
        self.queue_size = queue_size or workers * 2
        self.since = since
        self.until = until
        self.snapshot = snapshot
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.cancel_event = cancel_event or threading.Event()
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.metrics = AnalysisMetrics(workers=workers)
        self.context: Optional[TraversalContext] = None

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, refs: Optional[Sequence[str]] = None) -> Report:
        """
        Analyse the history reachable from `refs` (default: HEAD).

        Raises:
            RepositoryReadError: If a starting ref cannot be resolved
            AnalysisCancelled: If the run was cancelled
        """
        start_time = time.time()
        refs = list(refs) if refs else ["HEAD"]

        if self.repository.is_empty():
            self.reporter.info("Repository has no commits yet")
            tips: List[str] = []
        else:
            tips = list(dict.fromkeys(self.repository.resolve(ref) for ref in refs))

        context = self.context = TraversalContext()
        walker = HistoryWalker(
            self.repository,
            context,
            cancel_event=self.cancel_event,
            since=self.since,
            until=self.until,
        )

        self.reporter.stage_start(
            "History Walk",
            f"Walking {len(tips)} tip(s) with {self.workers} worker(s)...",
        )
        partials, worker_warnings = self._process(
            walker.walk(tips), total=self.repository.count_commits(tips)
        )

        aggregator = Aggregator(self.granularity)
        for partial in partials:
            aggregator.merge(partial)
        self.reporter.stage_complete(
            "History Walk",
            {
                "Commits visited": f"{len(context.visited):,}",
                "Commits aggregated": f"{context.commits_yielded:,}",
            },
        )

        warnings = context.warnings + worker_warnings
        composition: List[LanguageShare] = []
        if self.snapshot and tips:
            self.reporter.stage_start("Language Composition", "Scanning tree at tip...")
            try:
                composition = scan_language_composition(
                    self.repository, tips[0], self.classifier
                )
            except RepositoryReadError as e:
                warnings.append(f"Language composition unavailable: {e}")
            self.reporter.stage_complete("Language Composition")

        report = aggregator.finalize(
            repository_path=self.repository.path,
            refs=refs,
            warnings=warnings,
            composition=composition,
        )

        self.metrics.commits_processed = report.total_commits
        self.metrics.commits_visited = len(context.visited)
        self.metrics.file_changes = report.total_file_changes
        self.metrics.warnings = len(report.warnings)
        self.metrics.memory_peak_mb = self.memory_monitor.peak_mb
        self.metrics.total_time = time.time() - start_time
        return report

    def _process(
        self, commits: Iterator[Commit], total: Optional[int] = None
    ) -> Tuple[List[Aggregator], List[str]]:
        work: queue.Queue = queue.Queue(maxsize=self.queue_size)
        abort = threading.Event()
        progress = self.reporter.create_progress_bar(total=total, desc="Analyzing commits")

        def work_loop() -> Tuple[Aggregator, List[str]]:
            partial = Aggregator(self.granularity)
            warnings: List[str] = []
            try:
                while True:
                    try:
                        batch = work.get(timeout=_POLL_INTERVAL)
                    except queue.Empty:
                        if abort.is_set():
                            break
                        continue
                    if batch is None:
                        break
                    if self._cancelled():
                        abort.set()
                        break
                    for commit in batch:
                        self._record_commit(partial, commit, warnings)
            except Exception:
                abort.set()
                raise
            return partial, warnings

        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="git-report"
        ) as executor:
            futures = [executor.submit(work_loop) for _ in range(self.workers)]
            try:
                batch: List[Commit] = []
                walked = 0
                for commit in commits:
                    batch.append(commit)
                    walked += 1
                    if progress is not None:
                        progress.update(1)
                    if walked % 5000 == 0:
                        self.memory_monitor.check_memory()
                    if len(batch) >= self.batch_size:
                        if not self._put(work, batch, abort):
                            break
                        batch = []
                else:
                    if batch:
                        self._put(work, batch, abort)
                    for _ in futures:
                        self._put(work, None, abort)

                if self._cancelled():
                    raise AnalysisCancelled("Analysis cancelled; no report was produced")
                results = [future.result() for future in futures]
            except BaseException:
                abort.set()
                raise
            finally:
                if progress is not None:
                    progress.close()

        self.memory_monitor.check_memory()
        partials = [partial for partial, _ in results]
        warnings = [warning for _, batch_warnings in results for warning in batch_warnings]
        return partials, warnings

    def _put(self, work: queue.Queue, item: Optional[List[Commit]], abort: threading.Event) -> bool:
        """Block until the queue accepts `item`; False if the run was aborted."""
        while not abort.is_set():
            try:
                work.put(item, timeout=_POLL_INTERVAL)
            except queue.Full:
                if self._cancelled():
                    abort.set()
                continue
            if item is not None:
                self.metrics.batches += 1
            return True
        return False

    def _record_commit(self, aggregator: Aggregator, commit: Commit, warnings: List[str]):
        try:
            changes = self.repository.diff(commit)
        except RepositoryReadError as e:
            warnings.append(
                f"Unreadable diff for commit {commit.sha} ({e.reason}); "
                "its line changes were skipped"
            )
            changes = []

        commit = commit.with_changes(changes)
        if not commit.changes:
            aggregator.record(commit)
            return
        for change in commit.changes:
            aggregator.record(commit, change, self.classifier.classify(change.path))


def analyze_repository(path: str, refs: Optional[Sequence[str]] = None, **options) -> Report:
    """Open a repository, analyse it and return the finalized report."""
    with open_repository(path) as repository:
        return HistoryAnalysis(repository, **options).run(refs)


# ============================================================================
# EXPORT
# ============================================================================


def export_report_json(
    report: Report, output_path: str, include_generated_at: bool = True
) -> int:
    """Write the report as JSON. Returns the file size in bytes."""
    parent = os.path.dirname(output_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(
            report.to_dict(include_generated_at=include_generated_at),
            f,
            indent=2,
            ensure_ascii=False,
            sort_keys=True,
        )
    return os.path.getsize(output_path)


class MarkdownReportGenerator:
    """
    Render a Markdown summary of a Report.
    Long tables are truncated to keep the document readable.
    """

    def __init__(
        self,
        report: Report,
        output_dir: str,
        top: int = 10,
        max_activity_rows: int = 60,
        metrics: Optional[AnalysisMetrics] = None,
    ):
        self.report = report
        self.output_dir = Path(output_dir)
        self.top = top
        self.max_activity_rows = max_activity_rows
        self.metrics = metrics

    def _table(self, headers: List[str], rows: List[List[Any]]) -> List[str]:
        lines = [
            "| " + " | ".join(headers) + " |",
            "|" + "|".join("---" for _ in headers) + "|",
        ]
        for row in rows:
            lines.append("| " + " | ".join(str(cell) for cell in row) + " |")
        lines.append("")
        return lines

    def render(self) -> str:
        report = self.report
        lines = [
            "# Git Report",
            "",
            f"**Repository:** `{report.repository_path}`",
            f"**Refs:** {', '.join(f'`{ref}`' for ref in report.refs) or '-'}",
            f"**Generated:** {report.generated_at.isoformat()}",
            f"**Generator Version:** {VERSION}",
            "",
        ]

        if not report.is_complete:
            lines.extend(
                [
                    "> ⚠️ **This report may be incomplete.** "
                    f"{len(report.warnings)} problem(s) were found while reading history:",
                    ">",
                ]
            )
            lines.extend(f"> - {warning}" for warning in report.warnings)
            lines.append("")

        lines.extend(
            [
                "## 📊 Overview",
                "",
                f"- **Total Commits:** {report.total_commits:,}",
                f"- **File Changes:** {report.total_file_changes:,}",
                f"- **Contributors:** {len(report.contributors):,}",
                f"- **First Commit:** {_iso(report.first_commit) or '-'}",
                f"- **Last Commit:** {_iso(report.last_commit) or '-'}",
                "",
            ]
        )
        if self.metrics is not None:
            lines.extend(
                [
                    f"- **Execution Time:** {self.metrics.total_time:.2f}s",
                    f"- **Peak Memory:** {self.metrics.memory_peak_mb:.1f} MB",
                    "",
                ]
            )

        lines.extend([f"## 📅 Activity per {report.granularity}", ""])
        activity = list(report.activity)
        if len(activity) > self.max_activity_rows:
            lines.append(
                f"_Showing the most recent {self.max_activity_rows} of "
                f"{len(activity)} periods._"
            )
            lines.append("")
            activity = activity[-self.max_activity_rows :]
        lines.extend(
            self._table(
                ["Period", "Commits", "Authors", "Added", "Removed"],
                [
                    [b.start.isoformat(), b.commits, b.authors, b.lines_added, b.lines_removed]
                    for b in activity
                ],
            )
        )

        lines.extend([f"## 👥 Top {self.top} Contributors", ""])
        lines.extend(
            self._table(
                ["Name", "Email", "Commits", "Added", "Removed", "First", "Last"],
                [
                    [
                        c.name,
                        c.email,
                        c.commits,
                        c.lines_added,
                        c.lines_removed,
                        c.first_commit.date().isoformat(),
                        c.last_commit.date().isoformat(),
                    ]
                    for c in report.top_contributors(self.top)
                ],
            )
        )

        lines.extend(["## 🗂️ Changed Lines by Language", ""])
        lines.extend(
            self._table(
                ["Language", "Added", "Removed", "Files"],
                [
                    [s.language, s.lines_added, s.lines_removed, s.files_touched]
                    for s in report.languages
                ],
            )
        )

        if report.composition:
            lines.extend(["## 🧮 Language Composition", ""])
            lines.extend(
                self._table(
                    ["Language", "Files", "Lines", "Bytes"],
                    [[s.language, s.files, s.lines, s.bytes] for s in report.composition],
                )
            )

        return "\n".join(lines)

    def generate(self, output_filename: str = "git_report.md") -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.output_dir / output_filename
        with open(report_path, "w", encoding="utf-8") as f:
            f.write(self.render())
        return report_path


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_FILE_NAMES = (".git-report.yaml", ".git-report.yml", ".git-report.json")


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")
    return data


def find_config_file(repo_path: str) -> Optional[str]:
    """Look for a config file in the repository, then the current directory."""
    for search_dir in (repo_path, os.getcwd()):
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


def to_utc_datetime(value: Any, end_of_day: bool = False) -> Optional[datetime]:
    """
    Coerce a config/CLI value (datetime, date or 'YYYY-MM-DD' string) to an
    aware UTC datetime. With end_of_day, a bare date becomes the following
    midnight so the whole day is included.
    """
    if value is None:
        return None
    is_bare_date = False
    if isinstance(value, str):
        is_bare_date = len(value.strip()) == 10
        value = datetime.fromisoformat(value.strip())
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
        is_bare_date = True

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if end_of_day and is_bare_date:
        value += timedelta(days=1)
    return value


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        repo_path: str,
    ):
        self.cli = {
            k: v for k, v in cli_args.items() if v is not None and v is not False and v != ()
        }
        self.config: Dict[str, Any] = {}
        self.discovered_path: Optional[str] = None
        self.load_error: Optional[str] = None

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.discovered_path = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    self.load_error = f"Found {auto_path} but failed to load it: {e}"

        # Normalize config keys (kebab-case to snake_case)
        self.config = {str(k).replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("repo_path", type=click.Path(resolve_path=True), required=False)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: git_report_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
# History selection
@click.option("--ref", "refs", multiple=True, help="Start from this ref (repeatable, default HEAD)")
@click.option(
    "--all", "all_branches", is_flag=True, default=None,
    help="Start from every local and remote-tracking branch",
)
@click.option(
    "--since", metavar="YYYY-MM-DD",
    help="Only count commits on or after this date (UTC)",
)
@click.option(
    "--until", metavar="YYYY-MM-DD",
    help="Only count commits on or before this date (UTC)",
)
# Aggregation
@click.option(
    "--granularity", type=click.Choice(GRANULARITIES),
    help="Activity bucket size (default: day)",
)
@click.option("--workers", type=click.IntRange(min=1), help="Worker threads (default: 4)")
@click.option("--batch-size", type=click.IntRange(min=1), help="Commits per work batch")
@click.option("--top", type=click.IntRange(min=1), help="Contributors listed in the summary")
@click.option(
    "--no-snapshot", is_flag=True, default=None,
    help="Skip the language composition scan of the tip tree",
)
@click.option("--memory-limit", type=float, help="Memory limit in MB")
# Output Control
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v", "--verbose", is_flag=True, default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run", is_flag=True, default=None,
    help="Show what would be analysed without running",
)
@click.version_option(version=VERSION)
def main(repo_path, output, config, **kwargs):
    """
    Analyse the history of the git repository at REPO_PATH and write
    git_report.json and git_report.md.
    """
    if not repo_path:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    try:
        resolver = ConfigResolver(kwargs, config, repo_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        ProgressReporter().error(f"Invalid configuration: {e}")
        sys.exit(1)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    if not no_color:
        colorama.just_fix_windows_console()
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    if resolver.discovered_path:
        reporter.info(f"Auto-discovered configuration: {resolver.discovered_path}")
    if resolver.load_error:
        reporter.warning(resolver.load_error)

    refs = resolver.get("refs", []) or []
    if isinstance(refs, str):
        refs = [refs]
    refs = [str(ref) for ref in refs]
    all_branches = resolver.get("all_branches", False)
    granularity = resolver.get("granularity", "day")
    snapshot = not resolver.get("no_snapshot", not resolver.get("snapshot", True))
    memory_limit = resolver.get("memory_limit")
    languages = resolver.get("languages", {}) or {}

    try:
        workers = int(resolver.get("workers", 4))
        batch_size = int(resolver.get("batch_size", 64))
        top = int(resolver.get("top", 10))
        if granularity not in GRANULARITIES:
            raise ValueError(f"granularity must be one of {', '.join(GRANULARITIES)}")
        since = to_utc_datetime(resolver.get("since"))
        until = to_utc_datetime(resolver.get("until"), end_of_day=True)
        if not isinstance(languages, dict):
            raise ValueError("languages must map extensions to language names")
    except (TypeError, ValueError) as e:
        reporter.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if resolver.get("dry_run", False):
        reporter.info("DRY RUN MODE - No analysis will be performed")
        reporter.info(f"Repository: {repo_path}")
        reporter.info(f"Refs: {'all branches' if all_branches else ', '.join(refs) or 'HEAD'}")
        reporter.info(f"Granularity: {granularity}")
        reporter.info(f"Workers: {workers} (batch size {batch_size})")
        if since or until:
            reporter.info(f"Date range: {_iso(since) or '-'} .. {_iso(until) or '-'}")
        reporter.info(f"Language composition scan: {'on' if snapshot else 'off'}")
        reporter.info("Outputs: git_report.json, git_report.md")
        return

    try:
        repository = open_repository(repo_path)
    except RepositoryOpenError as e:
        reporter.error(str(e))
        sys.exit(1)

    output_dir = output or f"git_report_output_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    cancel_event = threading.Event()

    try:
        with repository:
            if all_branches:
                refs = repository.branch_refs() or refs

            reporter.stage_start("Initialization", f"Analyzing repository: {repository.path}")
            analysis = HistoryAnalysis(
                repository,
                classifier=LanguageClassifier(languages),
                granularity=granularity,
                workers=workers,
                batch_size=batch_size,
                since=since,
                until=until,
                snapshot=snapshot,
                reporter=reporter,
                cancel_event=cancel_event,
                memory_limit_mb=memory_limit,
            )
            reporter.stage_complete("Initialization")
            report = analysis.run(refs)

        reporter.stage_start("Export", f"Writing report to {output_dir}...")
        json_path = os.path.join(output_dir, "git_report.json")
        json_size = export_report_json(report, json_path)
        markdown_path = MarkdownReportGenerator(
            report, output_dir, top=top, metrics=analysis.metrics
        ).generate()
        reporter.stage_complete(
            "Export",
            {"JSON": f"{json_path} ({json_size:,} bytes)", "Markdown": str(markdown_path)},
        )

        if not report.is_complete:
            reporter.warning(
                f"Report may be incomplete: {len(report.warnings)} warning(s)"
            )
            reporter.list_warnings(report.warnings)

        reporter.summary(
            {
                "Repository": repository.path,
                "Output directory": output_dir,
                "Total commits": f"{report.total_commits:,}",
                "Contributors": f"{len(report.contributors):,}",
                "Languages": f"{len(report.languages):,}",
                "Warnings": len(report.warnings),
                "Peak memory": f"{analysis.metrics.memory_peak_mb:.1f} MB",
            }
        )
        reporter.success(f"Report complete! Results saved to: {output_dir}")

    except KeyboardInterrupt:
        cancel_event.set()
        reporter.error("Interrupted; no report was written")
        sys.exit(130)
    except GitReportError as e:
        reporter.error(str(e))
        sys.exit(1)
    except Exception as e:
        reporter.error(f"Analysis failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
