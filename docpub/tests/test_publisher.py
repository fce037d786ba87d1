from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import subprocess
from typing import Callable

import pytest

from conftest import branch_file_bytes, branch_files, git, init_repo, write_tree
from docpub.models.publisher import AuthorIdentity, PublishTarget
from docpub.services.publisher import (
    DestinationUnreachableError,
    GitBranchPublisher,
    InvalidArtifactError,
    NOJEKYLL_MARKER,
    PublishError,
    UnauthorizedError,
    classify_git_failure,
)


BOT = AuthorIdentity(name="github-actions[bot]", email="github-actions@users.noreply.github.com")


def test_publish_creates_branch_with_artifact_contents(repo: Path, artifact: Callable[..., Path]) -> None:
    source = artifact({"index.html": "<h1>Home</h1>", "api/mod.html": "<p>mod</p>"})
    publisher = GitBranchPublisher(repo_path=repo)

    record = publisher.publish(source, PublishTarget(branch="gh-pages", author=BOT), source_revision="abc123")

    assert branch_files(repo, "gh-pages") == ["api/mod.html", "index.html"]
    assert record.files == ("api/mod.html", "index.html")
    assert record.parent_hash is None
    assert record.commit_hash == git(repo, "rev-parse", "refs/heads/gh-pages")
    assert record.tree_hash == git(repo, "rev-parse", "refs/heads/gh-pages^{tree}")
    assert record.published_at.tzinfo == timezone.utc

    author = git(repo, "log", "-1", "--pretty=%an <%ae>|%cn <%ce>|%B", "refs/heads/gh-pages")
    assert author == (
        "github-actions[bot] <github-actions@users.noreply.github.com>|"
        "github-actions[bot] <github-actions@users.noreply.github.com>|deploy: abc123"
    )


def test_publish_replaces_all_previous_content(repo: Path, artifact: Callable[..., Path]) -> None:
    publisher = GitBranchPublisher(repo_path=repo)
    target = PublishTarget(branch="gh-pages", author=BOT)

    first = publisher.publish(artifact({"old.html": "old", "nested/stale.html": "stale"}), target)
    second = publisher.publish(artifact({"index.html": "new", "api/mod.html": "mod"}), target)

    assert branch_files(repo, "gh-pages") == ["api/mod.html", "index.html"]
    assert second.parent_hash == first.commit_hash
    history = git(repo, "rev-list", "refs/heads/gh-pages").splitlines()
    assert history == [second.commit_hash, first.commit_hash]


def test_publishing_same_artifact_twice_appends_identical_records(
    repo: Path, artifact: Callable[..., Path]
) -> None:
    source = artifact({"index.html": "same"})
    publisher = GitBranchPublisher(repo_path=repo)
    target = PublishTarget(branch="gh-pages", author=BOT)

    first = publisher.publish(source, target, published_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    second = publisher.publish(source, target, published_at=datetime(2024, 1, 2, tzinfo=timezone.utc))

    assert first.commit_hash != second.commit_hash
    assert first.tree_hash == second.tree_hash
    assert second.parent_hash == first.commit_hash
    assert git(repo, "rev-list", "--count", "refs/heads/gh-pages") == "2"


def test_published_bytes_are_identical_to_the_artifact(repo: Path, artifact: Callable[..., Path]) -> None:
    payload = {
        "index.html": b"line one\r\nline two\r\n",
        "logo.png": bytes(range(256)),
        ".gitattributes": b"* text=auto eol=lf\n",
        ".gitignore": b"*.png\n",
    }
    source = artifact(payload)

    GitBranchPublisher(repo_path=repo).publish(source, PublishTarget(author=BOT))

    assert branch_files(repo, "gh-pages") == sorted(payload)
    for name, content in payload.items():
        assert branch_file_bytes(repo, "gh-pages", name) == content


def test_executable_bit_is_preserved(repo: Path, artifact: Callable[..., Path]) -> None:
    source = artifact({"run.sh": "#!/bin/sh\n", "index.html": "x"})
    (source / "run.sh").chmod(0o755)

    GitBranchPublisher(repo_path=repo).publish(source, PublishTarget(author=BOT))

    listing = git(repo, "ls-tree", "refs/heads/gh-pages", "run.sh")
    assert listing.startswith("100755 ")


def test_disable_processing_adds_marker_without_touching_artifact(
    repo: Path, artifact: Callable[..., Path]
) -> None:
    source = artifact({"index.html": "x"})

    record = GitBranchPublisher(repo_path=repo).publish(
        source, PublishTarget(author=BOT, disable_processing=True)
    )

    assert NOJEKYLL_MARKER in record.files
    assert branch_files(repo, "gh-pages") == [NOJEKYLL_MARKER, "index.html"]
    assert branch_file_bytes(repo, "gh-pages", NOJEKYLL_MARKER) == b""
    assert not (source / NOJEKYLL_MARKER).exists()


def test_publish_dir_selects_subdirectory(repo: Path, artifact: Callable[..., Path]) -> None:
    source = artifact({"doc/index.html": "x", "doc/api/mod.html": "y", "build.log": "noise"})

    GitBranchPublisher(repo_path=repo).publish(source, PublishTarget(author=BOT, publish_dir="doc"))

    assert branch_files(repo, "gh-pages") == ["api/mod.html", "index.html"]


def test_publish_dir_must_stay_inside_artifact(repo: Path, artifact: Callable[..., Path]) -> None:
    source = artifact({"index.html": "x"})

    with pytest.raises(InvalidArtifactError):
        GitBranchPublisher(repo_path=repo).publish(source, PublishTarget(author=BOT, publish_dir="../"))


def test_symlinked_directories_are_published_with_their_contents(
    repo: Path, artifact: Callable[..., Path]
) -> None:
    source = artifact({"index.html": "home", "real/a.html": "<p>a</p>"})
    (source / "linked").symlink_to(source / "real", target_is_directory=True)

    record = GitBranchPublisher(repo_path=repo).publish(source, PublishTarget(author=BOT))

    assert record.files == ("index.html", "linked/a.html", "real/a.html")
    assert branch_files(repo, "gh-pages") == ["index.html", "linked/a.html", "real/a.html"]
    assert branch_file_bytes(repo, "gh-pages", "linked/a.html") == b"<p>a</p>"


def test_directory_links_leaving_the_artifact_are_rejected(
    repo: Path, artifact: Callable[..., Path], tmp_path: Path
) -> None:
    outside = write_tree(tmp_path / "outside", {"secret.html": "x"})
    escaping = artifact({"index.html": "home"})
    (escaping / "shared").symlink_to(outside, target_is_directory=True)
    looping = artifact({"index.html": "home", "api/mod.html": "mod"})
    (looping / "api" / "up").symlink_to(looping, target_is_directory=True)
    publisher = GitBranchPublisher(repo_path=repo)

    with pytest.raises(InvalidArtifactError):
        publisher.publish(escaping, PublishTarget(author=BOT))
    with pytest.raises(InvalidArtifactError):
        publisher.publish(looping, PublishTarget(author=BOT))

    assert git(repo, "for-each-ref", "refs/heads/") == ""


def test_missing_or_empty_artifact_is_rejected(repo: Path, tmp_path: Path) -> None:
    publisher = GitBranchPublisher(repo_path=repo)
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(InvalidArtifactError):
        publisher.publish(tmp_path / "missing", PublishTarget(author=BOT))
    with pytest.raises(InvalidArtifactError):
        publisher.publish(empty, PublishTarget(author=BOT))

    assert git(repo, "for-each-ref", "refs/heads/") == ""


def test_failure_before_ref_update_leaves_destination_intact(
    repo: Path, artifact: Callable[..., Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    publisher = GitBranchPublisher(repo_path=repo)
    target = PublishTarget(branch="gh-pages", author=BOT)
    previous = publisher.publish(artifact({"index.html": "v1", "guide.html": "v1"}), target)

    original_run_git = GitBranchPublisher._run_git

    def failing_run_git(self: GitBranchPublisher, *args: str, **kwargs: object):
        if "update-ref" in args:
            raise PublishError("simulated crash while writing")
        return original_run_git(self, *args, **kwargs)

    monkeypatch.setattr(GitBranchPublisher, "_run_git", failing_run_git)

    with pytest.raises(PublishError):
        publisher.publish(artifact({"index.html": "v2"}), target)

    assert git(repo, "rev-parse", "refs/heads/gh-pages") == previous.commit_hash
    assert branch_files(repo, "gh-pages") == ["guide.html", "index.html"]
    assert branch_file_bytes(repo, "gh-pages", "index.html") == b"v1"


def test_concurrent_publish_is_rejected_by_compare_and_swap(
    repo: Path, artifact: Callable[..., Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    publisher = GitBranchPublisher(repo_path=repo)
    target = PublishTarget(branch="gh-pages", author=BOT)
    publisher.publish(artifact({"index.html": "v1"}), target)

    original_run_git = GitBranchPublisher._run_git
    racing: dict[str, object] = {}

    def racing_run_git(self: GitBranchPublisher, *args: str, **kwargs: object):
        if "update-ref" in args and "started" not in racing:
            # Another run publishes between our parent lookup and the ref update.
            racing["started"] = True
            racing["record"] = GitBranchPublisher(repo_path=repo).publish(artifact({"index.html": "other"}), target)
        return original_run_git(self, *args, **kwargs)

    monkeypatch.setattr(GitBranchPublisher, "_run_git", racing_run_git)

    with pytest.raises(PublishError):
        publisher.publish(artifact({"index.html": "v2"}), target)

    assert git(repo, "rev-parse", "refs/heads/gh-pages") == racing["record"].commit_hash  # type: ignore[attr-defined]


def test_publish_pushes_to_remote_branch(tmp_path: Path, artifact: Callable[..., Path]) -> None:
    local = init_repo(tmp_path / "local")
    remote = init_repo(tmp_path / "remote.git", bare=True)
    publisher = GitBranchPublisher(repo_path=local)
    target = PublishTarget(branch="gh-pages", author=BOT, remote=str(remote))

    first = publisher.publish(artifact({"index.html": "v1"}), target)
    second = publisher.publish(artifact({"index.html": "v2", "api/mod.html": "m"}), target)

    assert first.remote == str(remote)
    assert second.parent_hash == first.commit_hash
    assert git(remote, "rev-parse", "refs/heads/gh-pages") == second.commit_hash
    assert branch_files(remote, "gh-pages") == ["api/mod.html", "index.html"]
    assert git(local, "for-each-ref", "refs/heads/") == ""


def test_unreachable_remote_raises_and_writes_nothing(tmp_path: Path, artifact: Callable[..., Path]) -> None:
    local = init_repo(tmp_path / "local")
    target = PublishTarget(branch="gh-pages", author=BOT, remote=str(tmp_path / "missing.git"))

    with pytest.raises(DestinationUnreachableError):
        GitBranchPublisher(repo_path=local).publish(artifact({"index.html": "x"}), target)


def test_missing_repository_is_unreachable(tmp_path: Path, artifact: Callable[..., Path]) -> None:
    with pytest.raises(DestinationUnreachableError):
        GitBranchPublisher(repo_path=tmp_path / "nope").publish(artifact({"a.html": "x"}), PublishTarget())


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("remote: Permission to org/repo.git denied to bot.\nfatal: unable to access: The requested URL returned error: 403", UnauthorizedError),
        ("fatal: Authentication failed for 'https://github.com/org/repo.git/'", UnauthorizedError),
        ("git@github.com: Permission denied (publickey).\nfatal: Could not read from remote repository.", UnauthorizedError),
        ("fatal: unable to access 'https://github.com/org/repo.git/': Could not resolve host: github.com", DestinationUnreachableError),
        ("ssh: connect to host github.com port 22: Connection refused", DestinationUnreachableError),
        ("! [rejected] abc -> gh-pages (fetch first)", PublishError),
    ],
)
def test_classify_git_failure(stderr: str, expected: type[PublishError]) -> None:
    error = classify_git_failure("git push failed", command=("push",), stderr=stderr)

    assert type(error) is expected
    assert error.stderr == stderr
    assert error.command == ("push",)


def test_token_is_not_exposed_in_errors(tmp_path: Path, artifact: Callable[..., Path]) -> None:
    local = init_repo(tmp_path / "local")
    target = PublishTarget(author=BOT, remote=str(tmp_path / "missing.git"))
    publisher = GitBranchPublisher(repo_path=local, token="s3cr3t-token")

    with pytest.raises(PublishError) as excinfo:
        publisher.publish(artifact({"index.html": "x"}), target)

    assert "s3cr3t" not in str(excinfo.value)
    assert all("extraheader" not in part for part in excinfo.value.command)
    assert "s3cr3t" not in repr(publisher)


def test_token_is_not_exposed_when_git_cannot_start(
    tmp_path: Path, artifact: Callable[..., Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    local = init_repo(tmp_path / "local")
    remote = init_repo(tmp_path / "remote.git", bare=True)
    publisher = GitBranchPublisher(repo_path=local, token="s3cr3t-token")
    real_run = subprocess.run

    def run_without_network(command: list[str], *args: object, **kwargs: object) -> object:
        if any("extraheader" in part for part in command):
            raise OSError("git executable vanished")
        return real_run(command, *args, **kwargs)

    monkeypatch.setattr("docpub.services.publisher.subprocess.run", run_without_network)

    with pytest.raises(PublishError) as excinfo:
        publisher.publish(artifact({"index.html": "x"}), PublishTarget(author=BOT, remote=str(remote)))

    assert "s3cr3t" not in str(excinfo.value)
    assert excinfo.value.command
    assert all("extraheader" not in part for part in excinfo.value.command)
