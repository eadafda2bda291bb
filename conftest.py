import pytest
import os
import subprocess
from cadence import (
    ProgressReporter, CommitMeta, DiffStats, BackendError,
    UnresolvableRevision, CommitHistoryAnalyzer, count_lines,
)

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

# Epoch seconds used by the git_repo fixture
JAN_01_10H = 1_704_103_200   # 2024-01-01 10:00 +0000
JAN_02_15H30 = 1_704_202_200 # 2024-01-02 15:30 +0200 (13:30 UTC)
JAN_02_17H = 1_704_214_800   # 2024-01-02 17:00 +0000
JAN_05_23H30 = 1_704_515_400 # 2024-01-05 23:30 -0500 (2024-01-06 04:30 UTC)

ALICE = ("Alice Smith", "alice@example.com")
BOB = ("Bob Jones", "bob@example.com")
CAROL = ("Carol White", "carol@example.com")


class FakeBackend:
    """In-memory backend; records which objects the engine asked for."""

    def __init__(self, commits=(), order=None, changes=None, blobs=None,
                 line_stats=None, stats=None, unborn=False):
        self.repo_path = "/fake/repo"
        self.commits = {c.id: c for c in commits}
        self.order = list(order) if order is not None else [c.id for c in commits]
        self.changes = changes or {}      # tree id -> list of changes (or an exception)
        self.blobs = blobs or {}          # blob id -> bytes
        self.line_stats = line_stats or {}
        self.stats = stats or {}          # tree id -> DiffStats
        self.loaded = []
        self.diff_requests = []
        self.stats_requests = []
        self.size_requests = []
        self.unborn = unborn
        self.closed = False

    def has_commits(self):
        return bool(self.commits)

    def is_unborn(self, spec):
        return self.unborn and spec == "HEAD"

    def resolve_revision(self, spec):
        if spec == "HEAD" and self.order:
            return self.order[0]
        if spec in self.commits:
            return spec
        raise UnresolvableRevision(spec)

    def count_commits(self, start):
        return len(self.order) - self.order.index(start)

    def ancestors(self, start):
        for commit_id in self.order[self.order.index(start):]:
            yield commit_id

    def load_commit(self, commit_id):
        self.loaded.append(commit_id)
        return self.commits[commit_id]

    def tree_of(self, commit_id):
        return self.commits[commit_id].tree

    def empty_tree(self):
        return EMPTY_TREE

    def tree_diff(self, base_tree, tree):
        self.diff_requests.append((base_tree, tree))
        result = self.changes.get(tree, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def blob_size(self, blob_id):
        self.size_requests.append(blob_id)
        if blob_id not in self.blobs:
            raise BackendError(f"missing blob {blob_id}")
        return len(self.blobs[blob_id])

    def blob_line_count(self, blob_id):
        if blob_id not in self.blobs:
            raise BackendError(f"missing blob {blob_id}")
        return count_lines(self.blobs[blob_id])

    def line_diff_stats(self, old_id, new_id):
        return self.line_stats.get((old_id, new_id), (0, 0))

    def diff_stats(self, base_tree, tree):
        self.stats_requests.append((base_tree, tree))
        return self.stats.get(tree, DiffStats())

    def close(self):
        self.closed = True


def make_commit(commit_id, parents=(), author=ALICE, time=1_700_000_000, offset=0, tree=None,
                commit_time=None):
    name, email = author
    return CommitMeta(
        id=commit_id,
        tree=tree or f"tree-{commit_id}",
        parents=tuple(parents),
        author_name=name,
        author_email=email,
        author_time=time,
        author_offset=offset,
        commit_time=time if commit_time is None else commit_time,
    )


def git(repo, *args, author=ALICE, when=None, committed=None):
    """
    Run git in `repo` with a fixed identity and, optionally, a fixed date.
    `committed` overrides the committer date alone.
    """
    env = dict(os.environ)
    name, email = author
    env.update(
        GIT_AUTHOR_NAME=name, GIT_AUTHOR_EMAIL=email,
        GIT_COMMITTER_NAME=name, GIT_COMMITTER_EMAIL=email,
    )
    if when is not None:
        env["GIT_AUTHOR_DATE"] = when
        env["GIT_COMMITTER_DATE"] = when
    if committed is not None:
        env["GIT_COMMITTER_DATE"] = committed
    result = subprocess.run(
        ["git", "-C", str(repo), "-c", "commit.gpgsign=false", "-c", "tag.gpgsign=false"]
        + list(args),
        check=True, capture_output=True, env=env,
    )
    return result.stdout.decode().strip()


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def commit_factory():
    return make_commit


@pytest.fixture
def backend_factory():
    return FakeBackend


@pytest.fixture
def git_cmd():
    return git


@pytest.fixture
def fake_history():
    """
    Three linear commits, two authors, one day apart (2023-11-14..16, 22:13 UTC).

    c0 Alice: add src/main.py (2 lines), add README (1 line)
    c1 Bob:   modify src/main.py (+1 -0), add docs/guide.md (4 lines)
    c2 Alice: delete README, rename docs/guide.md -> docs/manual.md
    """
    from cadence import Addition, Deletion, Modification, Rewrite

    t0 = 1_700_000_000
    c0 = make_commit("c0", author=ALICE, time=t0, tree="t0")
    c1 = make_commit("c1", parents=["c0"], author=BOB, time=t0 + 86_400, tree="t1")
    c2 = make_commit("c2", parents=["c1"], author=ALICE, time=t0 + 2 * 86_400, tree="t2")
    return FakeBackend(
        commits=[c2, c1, c0],
        changes={
            "t0": [
                Addition("src/main.py", "b1", 0o100644),
                Addition("README", "b2", 0o100644),
            ],
            "t1": [
                Modification("src/main.py", "b1", "b3", 0o100644, 0o100644),
                Addition("docs/guide.md", "b4", 0o100644),
            ],
            "t2": [
                Deletion("README", "b2", 0o100644),
                Rewrite("docs/guide.md", "docs/manual.md", "b4", "b4"),
            ],
        },
        blobs={
            "b1": b"a\nb\n",
            "b2": b"readme",
            "b3": b"a\nb\nc\n",
            "b4": b"x\ny\nz\nw\n",
        },
        line_stats={("b1", "b3"): (1, 0)},
        stats={
            "t0": DiffStats(2, 3, 0),
            "t1": DiffStats(2, 5, 0),
            "t2": DiffStats(2, 0, 1),
        },
    )


@pytest.fixture
def fake_analyzer(fake_history, quiet_reporter):
    return CommitHistoryAnalyzer(backend=fake_history, reporter=quiet_reporter)


@pytest.fixture
def git_repo(tmp_path):
    """
    Four commits by three authors with fixed dates and offsets.

    c1 Alice 2024-01-01 10:00 +0000  add app.py (2 lines), lib/util.py (1 line)
    c2 Bob   2024-01-02 15:30 +0200  app.py +2 -1, add lib/core.py (3 lines)  [tag v1]
    c3 Alice 2024-01-02 17:00 +0000  delete lib/util.py
    c4 Carol 2024-01-05 23:30 -0500  lib/core.py +1
    """
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")

    (repo / "lib").mkdir()
    (repo / "app.py").write_text("a\nb\n", encoding='utf-8')
    (repo / "lib" / "util.py").write_text("x\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "initial", author=ALICE, when=f"{JAN_01_10H} +0000")

    (repo / "app.py").write_text("a\nB\nc\n", encoding='utf-8')
    (repo / "lib" / "core.py").write_text("1\n2\n3\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "core", author=BOB, when=f"{JAN_02_15H30} +0200")
    git(repo, "tag", "v1")

    git(repo, "rm", "-q", "lib/util.py")
    git(repo, "commit", "-m", "drop util", author=ALICE, when=f"{JAN_02_17H} +0000")

    (repo / "lib" / "core.py").write_text("1\n2\n3\n4\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "extend core", author=CAROL, when=f"{JAN_05_23H30} -0500")

    return str(repo)


@pytest.fixture
def merge_repo(tmp_path):
    """
    base (Alice) -> main.txt; feature branch (Bob) adds feature.txt (3 lines);
    main gets another commit (Alice); Carol merges feature with --no-ff.
    """
    repo = tmp_path / "merge"
    repo.mkdir()
    git(repo, "init")

    (repo / "main.txt").write_text("one\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "base", when=f"{JAN_01_10H} +0000")

    git(repo, "checkout", "-q", "-b", "feature")
    (repo / "feature.txt").write_text("f1\nf2\nf3\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "feature", author=BOB, when=f"{JAN_01_10H + 3600} +0000")

    git(repo, "checkout", "-q", "-")
    (repo / "main.txt").write_text("one\ntwo\n", encoding='utf-8')
    git(repo, "add", ".")
    git(repo, "commit", "-m", "main work", when=f"{JAN_01_10H + 7200} +0000")

    git(repo, "merge", "--no-ff", "-q", "-m", "merge feature", "feature",
        author=CAROL, when=f"{JAN_01_10H + 10800} +0000")
    return str(repo)


@pytest.fixture
def empty_repo(tmp_path):
    repo = tmp_path / "empty"
    repo.mkdir()
    git(repo, "init")
    return str(repo)
