import pytest
import math
import os

from cadence import (
    GitBackend, CommitHistoryAnalyzer, ChangeExtractor, RangeResolver,
    Addition, Deletion, Modification, Rewrite, DiffStats,
    CadenceError, UnresolvableRevision, CorruptHistory, BackendError,
    ChurnAggregator, CommitFrequencyAggregator, CommitSizeAggregator,
    FrecencyAggregator, OwnershipAggregator, StreaksAggregator,
    TimeOfDayAggregator, HoursAggregator,
)
from conftest import JAN_01_10H, JAN_05_23H30, BOB

ALICE_ID = "Alice Smith <alice@example.com>"
BOB_ID = "Bob Jones <bob@example.com>"
CAROL_ID = "Carol White <carol@example.com>"


@pytest.fixture
def backend(git_repo):
    with GitBackend(git_repo) as b:
        yield b


# ============================================================================
# REVISIONS & ANCESTRY
# ============================================================================

def test_not_a_repository(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(CadenceError):
        GitBackend(str(plain))

def test_resolve_revision(backend, git_repo, git_cmd):
    head = git_cmd(git_repo, "rev-parse", "HEAD")
    assert backend.resolve_revision("HEAD") == head
    assert backend.resolve_revision("v1") == git_cmd(git_repo, "rev-parse", "v1^{commit}")
    assert backend.resolve_revision("HEAD~3") == git_cmd(git_repo, "rev-parse", "HEAD~3")
    with pytest.raises(UnresolvableRevision):
        backend.resolve_revision("no-such-branch")

def test_has_commits(backend, empty_repo):
    assert backend.has_commits()
    with GitBackend(empty_repo) as empty:
        assert not empty.has_commits()
        assert RangeResolver(empty).resolve() is None

def test_unborn_head_with_other_refs(backend, git_repo, git_cmd):
    assert not backend.is_unborn("HEAD")
    git_cmd(git_repo, "checkout", "-q", "--orphan", "fresh")
    assert backend.has_commits()
    assert backend.is_unborn("HEAD")
    assert not backend.is_unborn("v1")
    resolver = RangeResolver(backend)
    assert resolver.resolve() is None
    assert resolver.resolve("v1").start == backend.resolve_revision("v1")

def test_ancestors_order(backend, git_repo, git_cmd):
    expected = [git_cmd(git_repo, "rev-parse", f"HEAD~{n}") for n in range(4)]
    assert list(backend.ancestors(backend.resolve_revision("HEAD"))) == expected
    assert backend.count_commits(expected[0]) == 4

def test_ancestors_closed_early(backend):
    ancestors = backend.ancestors(backend.resolve_revision("HEAD"))
    first = next(ancestors)
    ancestors.close()
    assert len(first) == 40

def test_ancestors_bad_start(backend):
    with pytest.raises(CorruptHistory):
        list(backend.ancestors("0" * 40))


# ============================================================================
# OBJECTS
# ============================================================================

def test_load_commit(backend):
    head = backend.load_commit(backend.resolve_revision("HEAD"))
    assert head.author_name == "Carol White"
    assert head.author_email == "carol@example.com"
    assert head.author_time == JAN_05_23H30
    assert head.author_offset == -5 * 3600
    assert head.commit_time == JAN_05_23H30
    assert str(head.local_date) == "2024-01-05"
    assert head.local_datetime.hour == 23
    assert len(head.parents) == 1

    root = backend.load_commit(backend.resolve_revision("HEAD~3"))
    assert root.is_root
    assert root.author_time == JAN_01_10H

    tagged = backend.load_commit(backend.resolve_revision("v1"))
    assert (tagged.author_name, tagged.author_email) == BOB
    assert tagged.author_offset == 7200

def test_committer_time_differs_from_author_time(tmp_path, git_cmd):
    repo = tmp_path / "rebased"
    repo.mkdir()
    git_cmd(repo, "init")
    (repo / "notes.txt").write_text("n\n", encoding='utf-8')
    git_cmd(repo, "add", ".")
    git_cmd(repo, "commit", "-m", "old work",
            when=f"{JAN_01_10H} +0000", committed=f"{JAN_05_23H30} -0500")

    with GitBackend(str(repo)) as backend:
        commit = backend.load_commit(backend.resolve_revision("HEAD"))
        assert commit.author_time == JAN_01_10H
        assert commit.commit_time == JAN_05_23H30

    with CommitHistoryAnalyzer(str(repo)) as analyzer:
        analyzer.add_aggregator(FrecencyAggregator(analyzer, now=JAN_05_23H30))
        scores = dict(analyzer.analyze()["frecency"]["scores"])
    # age zero by committer date, five days old by author date
    assert scores["notes.txt"] == pytest.approx(1 / (1 + math.sqrt(2 / 1024)))

def test_load_commit_rejects_non_commits(backend):
    head = backend.load_commit(backend.resolve_revision("HEAD"))
    with pytest.raises(CorruptHistory):
        backend.load_commit(head.tree)
    with pytest.raises(CorruptHistory):
        backend.load_commit("1" * 40)
    # the reader is still usable afterwards
    assert backend.load_commit(head.id) == head

def test_blob_access(backend):
    c1 = backend.resolve_revision("HEAD~3")
    c2 = backend.resolve_revision("v1")
    changes = backend.tree_diff(backend.tree_of(c1), backend.tree_of(c2))
    core = [c for c in changes if getattr(c, "path", None) == "lib/core.py"][0]
    assert backend.blob_size(core.new_id) == len("1\n2\n3\n")
    assert backend.blob_line_count(core.new_id) == 3
    with pytest.raises(BackendError):
        backend.blob_size("2" * 40)

def test_empty_tree(backend):
    assert backend.empty_tree() == "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


# ============================================================================
# DIFFS
# ============================================================================

def test_tree_diff_and_line_stats(backend):
    c1 = backend.resolve_revision("HEAD~3")
    c2 = backend.resolve_revision("v1")
    changes = backend.tree_diff(backend.tree_of(c1), backend.tree_of(c2))
    assert [type(c) for c in changes] == [Modification, Addition]
    app, core = changes
    assert app.path == "app.py"
    assert core.path == "lib/core.py"
    assert backend.line_diff_stats(app.old_id, app.new_id) == (2, 1)
    assert backend.line_diff_stats(app.new_id, app.new_id) == (0, 0)

def test_tree_diff_deletion(backend):
    c3 = backend.load_commit(backend.resolve_revision("HEAD~1"))
    changes = backend.tree_diff(backend.tree_of(c3.parents[0]), c3.tree)
    assert len(changes) == 1
    assert isinstance(changes[0], Deletion)
    assert changes[0].path == "lib/util.py"

def test_diff_stats(backend):
    root = backend.load_commit(backend.resolve_revision("HEAD~3"))
    assert backend.diff_stats(backend.empty_tree(), root.tree) == DiffStats(2, 3, 0)
    c2 = backend.load_commit(backend.resolve_revision("v1"))
    assert backend.diff_stats(backend.tree_of(root.id), c2.tree) == DiffStats(2, 5, 1)
    assert backend.diff_stats(root.tree, root.tree) == DiffStats()

def test_tree_diff_failure(backend):
    with pytest.raises(BackendError):
        backend.tree_diff("3" * 40, backend.empty_tree())

def test_rename_detection(tmp_path, git_cmd):
    repo = tmp_path / "renames"
    repo.mkdir()
    git_cmd(repo, "init")
    (repo / "old.txt").write_text("".join(f"line {i}\n" for i in range(20)), encoding='utf-8')
    git_cmd(repo, "add", ".")
    git_cmd(repo, "commit", "-m", "add")
    git_cmd(repo, "mv", "old.txt", "new.txt")
    git_cmd(repo, "commit", "-m", "rename")

    with GitBackend(str(repo)) as backend:
        head = backend.load_commit(backend.resolve_revision("HEAD"))
        changes = ChangeExtractor(backend).diff(head)
    assert len(changes) == 1
    assert isinstance(changes[0], Rewrite)
    assert (changes[0].old_path, changes[0].new_path) == ("old.txt", "new.txt")
    assert changes[0].location == "new.txt"

def test_binary_and_symlink_changes(tmp_path, git_cmd):
    repo = tmp_path / "binary"
    repo.mkdir()
    git_cmd(repo, "init")
    (repo / "data.bin").write_bytes(b"\x00\x01\x02\x03")
    os.symlink("data.bin", str(repo / "alias"))
    git_cmd(repo, "add", ".")
    git_cmd(repo, "commit", "-m", "add")
    (repo / "data.bin").write_bytes(b"\x00\x09\x08")
    git_cmd(repo, "add", ".")
    git_cmd(repo, "commit", "-m", "change")

    with GitBackend(str(repo)) as backend:
        root = backend.load_commit(backend.resolve_revision("HEAD~1"))
        # the symlink is dropped, only the regular file remains
        added = ChangeExtractor(backend).diff(root)
        assert [c.path for c in added] == ["data.bin"]

        head = backend.load_commit(backend.resolve_revision("HEAD"))
        modified = ChangeExtractor(backend).diff(head)
        assert len(modified) == 1
        assert backend.line_diff_stats(modified[0].old_id, modified[0].new_id) is None


# ============================================================================
# FULL WALKS
# ============================================================================

def _all_aggregators(analyzer, now):
    return [
        ChurnAggregator(analyzer),
        CommitFrequencyAggregator(analyzer),
        CommitSizeAggregator(analyzer, percentiles=[50]),
        FrecencyAggregator(analyzer, now=now),
        OwnershipAggregator(analyzer),
        StreaksAggregator(analyzer),
        TimeOfDayAggregator(analyzer),
        HoursAggregator(analyzer),
    ]

def test_full_walk(git_repo, quiet_reporter):
    with CommitHistoryAnalyzer(git_repo, quiet_reporter) as analyzer:
        for agg in _all_aggregators(analyzer, JAN_05_23H30):
            analyzer.add_aggregator(agg)
        reports = analyzer.analyze()

    assert analyzer.metrics.commits_walked == 4
    assert reports["churn"]["totals"] == {
        ALICE_ID: {"added": 3, "removed": 1},
        BOB_ID: {"added": 5, "removed": 1},
        CAROL_ID: {"added": 1, "removed": 0},
    }
    assert reports["commit_frequency"] == {
        "commits_per_day": {"2024-01-01": 1, "2024-01-02": 2, "2024-01-05": 1},
        "commits_per_week": {"2024-W01": 4},
        "active_days_per_author": {ALICE_ID: 2, BOB_ID: 1, CAROL_ID: 1},
    }
    size = reports["commit_size"]
    assert (size["min_files"], size["max_files"]) == (1, 2)
    assert (size["min_lines"], size["max_lines"]) == (1, 6)
    assert size["avg_lines"] == 2.75
    assert size["median_lines"] == 2.0
    assert size["line_percentiles"] == [[50.0, 2]]
    assert reports["frecency"]["scores"][0][0] == "lib/core.py"
    assert {path for path, _ in reports["frecency"]["scores"]} == {
        "app.py", "lib/core.py", "lib/util.py",
    }
    assert reports["ownership"] == {
        ".": {ALICE_ID: 50.0, BOB_ID: 50.0},
        "lib": {ALICE_ID: 50.0, BOB_ID: 25.0, CAROL_ID: 25.0},
    }
    assert reports["streaks"] == {ALICE_ID: 2, BOB_ID: 1, CAROL_ID: 1}
    bins = reports["time_of_day"]["bins"]
    assert [hour for hour, count in enumerate(bins) if count] == [10, 15, 17, 23]
    assert reports["hours"]["total_hours"] == 8.0
    assert reports["hours"]["total_authors"] == 3

def test_hours_file_and_line_stats(git_repo, quiet_reporter):
    with CommitHistoryAnalyzer(git_repo, quiet_reporter) as analyzer:
        churn = ChurnAggregator(analyzer)
        hours = HoursAggregator(analyzer, file_stats=True, line_stats=True)
        analyzer.add_aggregator(churn)
        analyzer.add_aggregator(hours)
        reports = analyzer.analyze()

    assert analyzer.metrics.commits_diffed == 4
    assert reports["hours"]["total_files"] == [3, 1, 2, 2]
    assert reports["hours"]["total_lines"] == [9, 2, 7]
    totals = reports["churn"]["totals"].values()
    assert reports["hours"]["total_lines"][:2] == [
        sum(v["added"] for v in totals), sum(v["removed"] for v in totals),
    ]

def test_churn_per_file_equals_per_author(git_repo, quiet_reporter):
    with CommitHistoryAnalyzer(git_repo, quiet_reporter) as analyzer:
        by_author = ChurnAggregator(analyzer)
        by_file = ChurnAggregator(analyzer, per_file=True)
        analyzer.add_aggregator(by_author)
        analyzer.add_aggregator(by_file)
        analyzer.analyze()
    authors = by_author.finalize()["totals"].values()
    files = by_file.finalize()["totals"].values()
    for column in ("added", "removed"):
        assert sum(v[column] for v in authors) == sum(v[column] for v in files)

def test_walk_since_tag(git_repo, quiet_reporter):
    with CommitHistoryAnalyzer(git_repo, quiet_reporter) as analyzer:
        analyzer.add_aggregator(CommitFrequencyAggregator(analyzer))
        report = analyzer.analyze("HEAD", "v1")["commit_frequency"]
    assert analyzer.metrics.commits_walked == 3
    assert report["commits_per_day"] == {"2024-01-02": 2, "2024-01-05": 1}

def test_merge_commits(merge_repo, quiet_reporter):
    with CommitHistoryAnalyzer(merge_repo, quiet_reporter) as analyzer:
        churn = ChurnAggregator(analyzer)
        owner = OwnershipAggregator(analyzer, depth=0)
        freq = CommitFrequencyAggregator(analyzer)
        for agg in (churn, owner, freq):
            analyzer.add_aggregator(agg)
        analyzer.analyze()

    # the merge brings feature.txt onto the first-parent line
    assert churn.finalize()["totals"][CAROL_ID] == {"added": 3, "removed": 0}
    assert CAROL_ID not in owner.finalize()["."]
    assert freq.finalize()["commits_per_day"] == {"2024-01-01": 4}

def test_empty_repository_walk(empty_repo, quiet_reporter):
    with CommitHistoryAnalyzer(empty_repo, quiet_reporter) as analyzer:
        analyzer.add_aggregator(ChurnAggregator(analyzer))
        analyzer.add_aggregator(TimeOfDayAggregator(analyzer, bins=6))
        reports = analyzer.analyze()
    assert reports["churn"] == {"totals": {}}
    assert reports["time_of_day"] == {"bins": [0] * 6}
