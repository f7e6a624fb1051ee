"""
Tests for migration verification.
"""

from pathlib import Path

import pytest
from conftest import FakeTargetStore

from forum_migrator import extractor
from forum_migrator.utils import write_json_atomic
from forum_migrator.verifier import VerificationReport, check_content, check_counts, check_integrity, verify_migration


def _healthy_store() -> FakeTargetStore:
    store = FakeTargetStore()
    store.add_user("a@example.org", "u1")
    store.tables["categories"] = [{"id": "P", "parent_id": None}, {"id": "C", "parent_id": "P"}]
    store.tables["threads"] = [{"id": "t1", "category_id": "C"}]
    store.tables["posts"] = [
        {"id": "p1", "thread_id": "t1", "content_html": "<p>first</p>"},
        {"id": "p2", "thread_id": "t1", "content_html": "<p>reply</p>"},
    ]
    return store


def _write_snapshots(data_dir: Path, *, users: int, categories: int, discussions: int, comments: int) -> None:
    write_json_atomic(data_dir / extractor.USERS_FILE, [{}] * users)
    write_json_atomic(data_dir / extractor.CATEGORIES_FILE, [{}] * categories)
    write_json_atomic(data_dir / extractor.DISCUSSIONS_FILE, [{}] * discussions)
    write_json_atomic(data_dir / extractor.COMMENTS_FILE, [{}] * comments)


def _statuses(report: VerificationReport) -> dict[str, str]:
    return {r.check: r.status for r in report.results}


@pytest.mark.unit
class TestCounts:
    def test_matching_counts_pass(self, tmp_path: Path) -> None:
        _write_snapshots(tmp_path, users=1, categories=2, discussions=1, comments=1)
        report = VerificationReport()
        check_counts(report, _healthy_store(), tmp_path)
        assert set(_statuses(report).values()) == {"pass"}

    def test_mismatch_is_only_a_warning(self, tmp_path: Path) -> None:
        _write_snapshots(tmp_path, users=3, categories=5, discussions=1, comments=4)
        report = VerificationReport()
        check_counts(report, _healthy_store(), tmp_path)
        assert _statuses(report) == {"Users": "warn", "Categories": "warn", "Threads": "pass", "Posts": "warn"}
        assert report.exit_code == 0

    def test_missing_snapshots_report_target_only(self, tmp_path: Path) -> None:
        report = VerificationReport()
        check_counts(report, _healthy_store(), tmp_path)
        assert set(_statuses(report).values()) == {"pass"}
        assert report.results[3].message == "Target: 2"


@pytest.mark.unit
class TestIntegrity:
    def test_healthy(self) -> None:
        report = VerificationReport()
        check_integrity(report, _healthy_store())
        assert report.failed == 0

    def test_thread_without_posts_fails(self) -> None:
        store = _healthy_store()
        store.tables["threads"].append({"id": "t2", "category_id": "C"})
        report = VerificationReport()
        check_integrity(report, store)
        assert _statuses(report)["Threads have posts"] == "fail"

    def test_post_without_thread_fails(self) -> None:
        store = _healthy_store()
        store.tables["posts"].append({"id": "p3", "thread_id": None, "content_html": "<p>x</p>"})
        report = VerificationReport()
        check_integrity(report, store)
        assert _statuses(report)["No orphaned posts"] == "fail"

    def test_third_level_category_fails(self) -> None:
        store = _healthy_store()
        store.tables["categories"].append({"id": "G", "parent_id": "C"})
        report = VerificationReport()
        check_integrity(report, store)
        assert _statuses(report)["Category depth"] == "fail"
        assert report.exit_code == 1


@pytest.mark.unit
class TestContent:
    def test_empty_html_warns(self) -> None:
        store = _healthy_store()
        store.tables["posts"][0]["content_html"] = "  "
        report = VerificationReport()
        check_content(report, store)
        assert _statuses(report) == {"Content HTML generated": "warn", "Content sanitized": "pass"}

    def test_script_tag_fails(self) -> None:
        store = _healthy_store()
        store.tables["posts"][1]["content_html"] = "<p>x</p><SCRIPT>alert(1)</SCRIPT>"
        report = VerificationReport()
        check_content(report, store)
        assert _statuses(report)["Content sanitized"] == "fail"

    def test_sample_is_limited(self) -> None:
        store = _healthy_store()
        store.tables["posts"].append({"id": "p9", "thread_id": "t1", "content_html": "<script>"})
        report = VerificationReport()
        check_content(report, store, sample_size=2)
        assert _statuses(report)["Content sanitized"] == "pass"


@pytest.mark.unit
class TestVerifyMigration:
    def test_clean_run(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _write_snapshots(tmp_path, users=1, categories=2, discussions=1, comments=1)
        report = verify_migration(_healthy_store(), tmp_path)
        assert (report.passed, report.warned, report.failed) == (9, 0, 0)
        assert report.exit_code == 0
        assert "Migration verified successfully" in capsys.readouterr().out
