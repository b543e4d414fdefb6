"""Tests for stepflow.git (local checkout -> trigger event)."""

from __future__ import annotations

from pathlib import Path

import pytest

from stepflow.git import GitError, current_ref, is_dirty, local_event, repo_root

from conftest import commit, git, requires_git

pytestmark = requires_git


class TestRepoFacts:
    def test_root_and_ref(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        (git_repo / "sub").mkdir()
        assert repo_root(git_repo / "sub").resolve() == git_repo.resolve()
        assert current_ref(git_repo) == "refs/heads/main"

    def test_detached_head(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        git(git_repo, "checkout", "-q", "--detach")
        assert current_ref(git_repo) is None

    def test_dirty(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        assert not is_dirty(git_repo)
        (git_repo / "new.txt").write_text("n")
        assert is_dirty(git_repo)

    def test_outside_a_repository(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(GitError):
            repo_root(plain)


class TestLocalEvent:
    def test_dirty_tree_lists_working_changes(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a", "b.txt": "b"})
        (git_repo / "a.txt").write_text("modified")
        (git_repo / "staged.txt").write_text("s")
        git(git_repo, "add", "staged.txt")
        (git_repo / "untracked.txt").write_text("u")

        event = local_event("push", cwd=git_repo)
        assert event.name == "push"
        assert event.ref == "refs/heads/main"
        assert event.sha is None
        assert event.changed_files == ("a.txt", "staged.txt", "untracked.txt")

    def test_clean_tree_diffs_against_merge_base(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        git(git_repo, "branch", "base")
        commit(git_repo, {"b.txt": "b"})
        head = commit(git_repo, {"src/c.py": "c"})

        event = local_event("push", compare_ref="base", cwd=git_repo)
        assert event.sha == head
        assert event.changed_files == ("b.txt", "src/c.py")

    def test_missing_compare_ref_falls_back_to_previous_commit(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        commit(git_repo, {"b.txt": "b"})
        event = local_event("push", compare_ref="origin/main", cwd=git_repo)
        assert event.changed_files == ("b.txt",)

    def test_single_commit_lists_tracked_files(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a", "docs/b.md": "b"})
        event = local_event("push", compare_ref="origin/main", cwd=git_repo)
        assert event.changed_files == ("a.txt", "docs/b.md")

    def test_explicit_ref_wins(self, git_repo: Path) -> None:
        commit(git_repo, {"a.txt": "a"})
        event = local_event("pull_request", ref="refs/heads/feature", cwd=git_repo)
        assert event.name == "pull_request"
        assert event.ref == "refs/heads/feature"
