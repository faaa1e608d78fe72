import pytest
import os
import subprocess
import threading
from collections import Counter
from datetime import datetime, timezone

from git_report import (
    ChangeKind, Commit, FileChange, ProgressReporter, RepositoryReadError,
)


def make_commit(sha, parents=(), author="Alice", email="alice@example.com",
                when="2024-01-01T12:00:00", changes=(), subject=""):
    """Build a Commit; `when` is an ISO string interpreted as UTC."""
    timestamp = datetime.fromisoformat(when).replace(tzinfo=timezone.utc)
    return Commit(
        sha=sha,
        parents=tuple(parents),
        author_name=author,
        author_email=email,
        timestamp=timestamp,
        subject=subject or f"commit {sha}",
        changes=tuple(changes),
    )


class FakeRepository:
    """
    In-memory repository with the same read API as GitRepository.
    Commits are stored with their diffs; read_commit strips them like the
    real reader does.
    """

    def __init__(self, commits, refs=None, unreadable=(), undiffable=(),
                 tree=None, lines=None):
        self.path = "/fake/repo"
        self.commits = {c.sha: c for c in commits}
        self.refs = dict(refs or {})
        self.unreadable = set(unreadable)
        self.undiffable = set(undiffable)
        self.tree = dict(tree or {})
        self.lines = dict(lines or {})
        self.reads = Counter()
        self.diffs = Counter()
        self._lock = threading.Lock()

    def resolve(self, ref):
        if ref in self.refs:
            return self.refs[ref]
        if ref in self.commits:
            return ref
        raise RepositoryReadError(ref, "does not name a commit")

    def is_empty(self):
        return not self.commits

    def count_commits(self, tips):
        return None

    def read_commit(self, sha):
        with self._lock:
            self.reads[sha] += 1
        if sha in self.unreadable or sha not in self.commits:
            raise RepositoryReadError(sha, "object is unreadable")
        return self.commits[sha].with_changes(())

    def diff(self, commit):
        with self._lock:
            self.diffs[commit.sha] += 1
        if commit.sha in self.undiffable:
            raise RepositoryReadError(commit.sha, "diff failed")
        return list(self.commits[commit.sha].changes)

    def tree_entries(self, sha):
        return dict(self.tree)

    def line_counts(self, sha):
        return dict(self.lines)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def commit_factory():
    return make_commit


@pytest.fixture
def fake_repo_factory():
    return FakeRepository


@pytest.fixture
def merge_scenario():
    """
    c1 (root, Alice): adds a.rs +10
    c2 (Bob):         modifies a.rs +2/-1
    c3 (merge of c2 and c1, Alice): reports b.md +5
    """
    c1 = make_commit("c1", when="2024-01-01T09:00:00",
                     changes=[FileChange("a.rs", 10, 0, ChangeKind.ADDED)])
    c2 = make_commit("c2", parents=["c1"], author="Bob", email="bob@example.com",
                     when="2024-01-02T09:00:00",
                     changes=[FileChange("a.rs", 2, 1, ChangeKind.MODIFIED)])
    c3 = make_commit("c3", parents=["c2", "c1"], when="2024-01-03T09:00:00",
                     changes=[FileChange("b.md", 5, 0, ChangeKind.ADDED)])
    return FakeRepository(
        [c1, c2, c3],
        refs={"HEAD": "c3"},
        tree={"a.rs": 120, "b.md": 40},
        lines={"a.rs": 11, "b.md": 5},
    )


# Author time for each commit in git_repo, as raw git dates
GIT_REPO_DATES = [
    "1704103200 +0000",  # 2024-01-01 10:00 UTC
    "1704189600 +0000",  # 2024-01-02 10:00 UTC
    "1704276000 +0000",  # 2024-01-03 10:00 UTC
    "1704362400 +0000",  # 2024-01-04 10:00 UTC
    "1704448800 +0000",  # 2024-01-05 10:00 UTC
    "1707127200 +0000",  # 2024-02-05 10:00 UTC
]

ALICE = ("Alice Smith", "alice@example.com")
BOB = ("Bob Jones", "Bob@Example.com")


@pytest.fixture
def git_repo(tmp_path):
    """
    Six commits on `main`:
      1 Alice  add src/app.py (3 lines) and README.md (2 lines)
      2 Bob    append one line to src/app.py
      3 Alice  (branch feature) add docs/guide.md (2 lines)
      4 Bob    rename src/app.py -> src/main.py, no content change
      5 Alice  merge feature into main
      6 Bob    add binary logo.png
    """
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args, who=None, date=None):
        env = dict(os.environ)
        if who is not None:
            env.update({
                "GIT_AUTHOR_NAME": who[0], "GIT_AUTHOR_EMAIL": who[1],
                "GIT_COMMITTER_NAME": who[0], "GIT_COMMITTER_EMAIL": who[1],
            })
        if date is not None:
            env.update({"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date})
        subprocess.run(["git", "-C", str(repo)] + list(args),
                       check=True, capture_output=True, env=env)

    run("init", "-q")
    run("symbolic-ref", "HEAD", "refs/heads/main")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("import sys\n\nprint(sys.argv)\n", encoding="utf-8")
    (repo / "README.md").write_text("# App\nA test app.\n", encoding="utf-8")
    run("add", ".")
    run("commit", "-m", "initial", who=ALICE, date=GIT_REPO_DATES[0])

    (repo / "src" / "app.py").write_text(
        "import sys\n\nprint(sys.argv)\nprint('done')\n", encoding="utf-8")
    run("commit", "-am", "print done", who=BOB, date=GIT_REPO_DATES[1])

    run("checkout", "-q", "-b", "feature")
    (repo / "docs").mkdir()
    (repo / "docs" / "guide.md").write_text("# Guide\nRun it.\n", encoding="utf-8")
    run("add", ".")
    run("commit", "-m", "add guide", who=ALICE, date=GIT_REPO_DATES[2])

    run("checkout", "-q", "main")
    run("mv", "src/app.py", "src/main.py")
    run("commit", "-m", "rename app", who=BOB, date=GIT_REPO_DATES[3])

    run("merge", "-q", "--no-ff", "-m", "merge feature", "feature",
        who=ALICE, date=GIT_REPO_DATES[4])

    (repo / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x01")
    run("add", ".")
    run("commit", "-m", "add logo", who=BOB, date=GIT_REPO_DATES[5])

    return str(repo)
