# ABOUTME: Git-backed desired-state store for (service, environment) image records
# ABOUTME: Reads and rewrites Kustomize/Helm files and publishes changes with compare-and-swap

"""
Desired-State Store.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The GitOps repository IS the desired state. For each (service, environment)
pair it holds:

    kubernetes/overlays/{env}/{service}/kustomization.yaml   (authoritative)
        images:
          - name: 8060633493/craftista-catalogue
            newTag: v1.2.3

    helm/charts/{service}/values-{env}.yaml                  (mirror, optional)
        image:
          tag: v1.2.3

This module reads those files, renders tag updates, and publishes changes as
commits to the shared remote that ArgoCD watches.

=============================================================================
PUBLISHING WITH COMPARE-AND-SWAP
=============================================================================

Two operators promoting the same service at once must not silently overwrite
each other. Callers remember the blob id of every file they read; publish()
refuses when the fetched remote carries a different blob for any of them:

    expected = {path: store.blob_id(path)}   # at read time
    ...
    store.publish(paths, message, expected)  # PublishConflict if it moved

Changes to unrelated files on the remote are fine: the local commit is
rebased on top of them before pushing.
"""

from __future__ import annotations

import difflib
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import yaml
from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import BadName, BadObject

from gitops_promoter.errors import (
    ExternalToolUnavailable,
    InvalidInput,
    InvalidRevision,
    PublishConflict,
    RecordNotFound,
)
from gitops_promoter.models import DesiredStateRecord, Environment, Service

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from git.objects import Commit

    from gitops_promoter.config import PromoterSettings

logger = structlog.get_logger(__name__)

RECORD_TEMPLATE = "kubernetes/overlays/{environment}/{service}/kustomization.yaml"
MIRROR_TEMPLATE = "helm/charts/{service}/values-{environment}.yaml"
POINTER_DIR = "gitops-promoter"


def record_path(service: Service | str, environment: Environment | str) -> str:
    return RECORD_TEMPLATE.format(service=service, environment=environment)


def mirror_path(service: Service | str, environment: Environment | str) -> str:
    return MIRROR_TEMPLATE.format(service=service, environment=environment)


def _dump(data: object) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def _find_scalar(node: yaml.Node | None, keys: tuple[str | int, ...]) -> yaml.ScalarNode | None:
    for key in keys:
        if isinstance(key, int):
            if not isinstance(node, yaml.SequenceNode) or len(node.value) <= key:
                return None
            node = node.value[key]
        else:
            if not isinstance(node, yaml.MappingNode):
                return None
            node = next(
                (v for k, v in node.value if isinstance(k, yaml.ScalarNode) and k.value == key),
                None,
            )
    return node if isinstance(node, yaml.ScalarNode) else None


def replace_scalar(text: str, keys: tuple[str | int, ...], value: str) -> str | None:
    """
    Rewrite the scalar at ``keys`` in place, leaving the rest of ``text`` untouched.

    Comments, key order and indentation survive because only the character
    span of the old value is replaced (the same edit ``yq -i`` makes). The
    new value is quoted when the old one was, or when YAML would otherwise
    read it as something other than a string (``1.10``, ``true``).

    Returns:
        The new text, or None if ``keys`` does not lead to a plain scalar.
    """
    node = _find_scalar(yaml.compose(text, Loader=yaml.SafeLoader), keys)
    if node is None or node.style in ("|", ">"):
        return None

    if node.style == "'":
        rendered = "'" + value.replace("'", "''") + "'"
    elif node.style == '"' or yaml.safe_load(value) != value:
        rendered = '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    else:
        rendered = value
    return text[: node.start_mark.index] + rendered + text[node.end_mark.index :]


def parse_record(
    text: str,
    service: Service,
    environment: Environment,
    path: str,
) -> DesiredStateRecord:
    """
    Parse a kustomization file into a record.

    The first ``images`` entry is authoritative. The image name is its
    ``newName`` when set, else its ``name``.

    Raises:
        RecordNotFound: If the YAML is invalid or has no usable images entry.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RecordNotFound(f"Malformed desired-state record {path}: {e}") from e

    images = data.get("images") if isinstance(data, dict) else None
    if not images or not isinstance(images[0], dict):
        raise RecordNotFound(f"No images entry in {path}")

    image = images[0]
    tag = image.get("newTag")
    if tag is None or str(tag) == "":
        raise RecordNotFound(f"No images[0].newTag in {path}")

    return DesiredStateRecord(
        service=service,
        environment=environment,
        image_name=str(image.get("newName") or image.get("name") or ""),
        image_tag=str(tag),
        path=path,
    )


class DesiredStateStore:
    """
    Working copy of the GitOps repository.

    Every read parses the file currently on disk; nothing is cached between
    calls, so two reads always reflect the latest write.
    """

    def __init__(
        self,
        repo_path: Path | str,
        remote: str = "origin",
        branch: str = "main",
        author_name: str = "GitOps Automation",
        author_email: str = "gitops-automation@craftista.com",
    ) -> None:
        try:
            self.repo = Repo(repo_path, search_parent_directories=False)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise InvalidInput(
                f"Not a git repository: {repo_path}",
                hint="Pass --repo or set GITOPS_REPO_PATH to the GitOps clone",
            ) from e
        if self.repo.bare:
            raise InvalidInput(f"Repository at {repo_path} has no working tree")

        self.root = Path(self.repo.working_tree_dir)
        self.remote = remote
        self.branch = branch
        self._author = Actor(author_name, author_email)

    @classmethod
    def from_settings(cls, settings: PromoterSettings) -> DesiredStateStore:
        return cls(
            settings.repo_path,
            remote=settings.remote,
            branch=settings.branch,
            author_name=settings.author_name,
            author_email=settings.author_email,
        )

    # -------------------------------------------------------------------------
    # READING
    # -------------------------------------------------------------------------

    def read_text(self, path: str) -> str | None:
        """Current working-tree contents of ``path``, or None if absent."""
        file = self.root / path
        if not file.is_file():
            return None
        return file.read_text()

    def read(self, service: Service, environment: Environment) -> DesiredStateRecord:
        """
        Read the desired-state record for (service, environment).

        Raises:
            RecordNotFound: If the record file is missing or malformed.
        """
        path = record_path(service, environment)
        text = self.read_text(path)
        if text is None:
            raise RecordNotFound(
                f"Desired-state record not found: {path}",
                hint=f"Check that {service} is deployed to {environment}",
            )
        return parse_record(text, service, environment, path)

    def read_all(
        self,
        environments: Iterable[Environment] = tuple(Environment),
    ) -> list[DesiredStateRecord]:
        """All existing records for the given environments; missing ones are skipped."""
        records = []
        for environment in environments:
            for service in Service:
                try:
                    records.append(self.read(service, environment))
                except RecordNotFound:
                    logger.debug("record_missing", service=service, environment=environment)
        return records

    def show(self, revision: str, path: str) -> str | None:
        """Contents of ``path`` at ``revision``, or None if it did not exist there."""
        commit = self.commit(revision)
        try:
            blob = commit.tree / path
        except KeyError:
            return None
        return blob.data_stream.read().decode()

    def commit(self, revision: str) -> Commit:
        """
        Resolve a revision expression to a commit.

        Raises:
            InvalidRevision: If it does not name a commit in this repository.
        """
        try:
            return self.repo.commit(revision)
        except (BadName, BadObject, ValueError, GitCommandError) as e:
            raise InvalidRevision(
                f"Invalid commit: {revision}",
                hint="Use 'gitops-promote history' to list promotion commits",
            ) from e

    def resolve_revision(self, revision: str) -> str:
        return self.commit(revision).hexsha

    def blob_id(self, path: str, revision: str = "HEAD") -> str | None:
        """Blob id of ``path`` at ``revision``; None when the file is absent there."""
        try:
            commit = self.repo.commit(revision)
        except (BadName, BadObject, ValueError, GitCommandError):
            return None
        try:
            return (commit.tree / path).hexsha
        except KeyError:
            return None

    def iter_commits(self, path: str, max_count: int | None = None) -> Iterator[Commit]:
        """Commits reachable from HEAD that touched ``path``, newest first."""
        kwargs = {"paths": path}
        if max_count is not None:
            kwargs["max_count"] = max_count
        return self.repo.iter_commits("HEAD", **kwargs)

    # -------------------------------------------------------------------------
    # RENDERING AND WRITING
    # -------------------------------------------------------------------------

    def render_tag_update(
        self,
        service: Service,
        environment: Environment,
        tag: str,
    ) -> dict[str, str]:
        """
        New contents of the record (and its Helm mirror) with ``tag`` applied.

        Nothing is written. Only files whose tag actually changes are
        returned; a missing mirror is skipped. Only the tag value is edited,
        so comments and layout of both files are kept.

        Raises:
            RecordNotFound: If the record is missing or malformed.
        """
        record = self.read(service, environment)
        changes: dict[str, str] = {}

        if record.image_tag != tag:
            updated = replace_scalar(self.read_text(record.path), ("images", 0, "newTag"), tag)
            if updated is None:
                raise RecordNotFound(f"images[0].newTag in {record.path} is not a plain value")
            changes[record.path] = updated

        helm_path = mirror_path(service, environment)
        helm_text = self.read_text(helm_path)
        if helm_text is None:
            logger.debug("mirror_missing", path=helm_path)
            return changes

        values = yaml.safe_load(helm_text) or {}
        image = values.get("image") if isinstance(values, dict) else None
        current = image.get("tag") if isinstance(image, dict) else None
        if current is not None and str(current) == tag:
            return changes

        updated = replace_scalar(helm_text, ("image", "tag"), tag)
        if updated is None:
            # No image.tag to edit in place; add it.
            logger.info("mirror_tag_added", path=helm_path)
            if not isinstance(values, dict):
                values = {}
            if not isinstance(values.get("image"), dict):
                values["image"] = {}
            values["image"]["tag"] = tag
            updated = _dump(values)
        changes[helm_path] = updated
        return changes

    def write(self, changes: dict[str, str]) -> None:
        for path, content in changes.items():
            file = self.root / path
            file.parent.mkdir(parents=True, exist_ok=True)
            file.write_text(content)
            logger.info("record_written", path=path)

    def diff(self, changes: dict[str, str]) -> str:
        """Unified diff between the files on disk and ``changes``."""
        chunks = []
        for path, new in changes.items():
            old = self.read_text(path) or ""
            chunks.extend(
                difflib.unified_diff(
                    old.splitlines(keepends=True),
                    new.splitlines(keepends=True),
                    fromfile=f"a/{path}",
                    tofile=f"b/{path}",
                )
            )
        return "".join(chunks)

    # -------------------------------------------------------------------------
    # ROLLBACK POINTER
    # -------------------------------------------------------------------------
    # One slot per (environment, service), kept inside the git directory so it
    # is never staged or pushed.

    def pointer_path(self, service: Service, environment: Environment) -> Path:
        return Path(self.repo.git_dir) / POINTER_DIR / f"last-{environment}-{service}"

    def save_rollback_pointer(self, service: Service, environment: Environment, tag: str) -> Path:
        path = self.pointer_path(service, environment)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(tag + "\n")
        logger.info("rollback_pointer_saved", path=str(path), tag=tag)
        return path

    def read_rollback_pointer(self, service: Service, environment: Environment) -> str | None:
        path = self.pointer_path(service, environment)
        if not path.is_file():
            return None
        return path.read_text().strip() or None

    # -------------------------------------------------------------------------
    # REMOTE SYNCHRONISATION
    # -------------------------------------------------------------------------

    @property
    def has_remote(self) -> bool:
        return any(r.name == self.remote for r in self.repo.remotes)

    @property
    def remote_ref(self) -> str:
        return f"{self.remote}/{self.branch}"

    def _git_env(self) -> dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self._author.name,
            "GIT_AUTHOR_EMAIL": self._author.email,
            "GIT_COMMITTER_NAME": self._author.name,
            "GIT_COMMITTER_EMAIL": self._author.email,
        }

    def fetch(self) -> str | None:
        """
        Fetch the tracked branch.

        Returns:
            Remote head SHA, or None without a remote or remote branch.

        Raises:
            ExternalToolUnavailable: If the remote cannot be reached.
        """
        if not self.has_remote:
            return None
        try:
            self.repo.git.fetch(self.remote, self.branch)
        except GitCommandError as e:
            raise ExternalToolUnavailable(
                f"Could not fetch {self.remote_ref}: {e.stderr.strip() if e.stderr else e}",
            ) from e
        try:
            return self.repo.commit(self.remote_ref).hexsha
        except (BadName, BadObject, ValueError, GitCommandError):
            return None

    def refresh(self) -> bool:
        """
        Fast-forward the working copy to the remote head.

        Only when the working copy is clean and strictly behind; a diverged or
        dirty working copy is left alone (publish() handles it).

        Returns:
            True if HEAD moved.
        """
        remote_head = self.fetch()
        if remote_head is None or remote_head == self.repo.head.commit.hexsha:
            return False
        if self.repo.is_dirty(untracked_files=False):
            logger.warning("refresh_skipped_dirty", remote=self.remote_ref)
            return False
        if not self.repo.is_ancestor("HEAD", remote_head):
            logger.info("refresh_skipped_diverged", remote=self.remote_ref)
            return False
        self.repo.git.merge("--ff-only", remote_head)
        logger.info("refreshed", head=remote_head[:12])
        return True

    def publish(
        self,
        paths: list[str],
        message: str,
        expected: dict[str, str | None],
    ) -> str:
        """
        Commit ``paths`` (already written to the working tree) and push.

        Args:
            paths: Repository-relative files to stage; nothing else is added.
            message: Full commit message.
            expected: Blob id each path had when it was read (None = absent).

        Returns:
            SHA of the published commit.

        Raises:
            PublishConflict: If HEAD or the remote no longer carries the
                expected blobs, or the remote rejects the push. Any local
                commit is undone softly so the change stays in the index.
        """
        log = logger.bind(paths=paths)

        for path, blob in expected.items():
            if self.blob_id(path) != blob:
                raise PublishConflict(
                    f"{path} changed locally since it was read",
                    hint="Run the command again",
                )

        remote_head = self.fetch()
        if remote_head is not None:
            for path, blob in expected.items():
                if self.blob_id(path, remote_head) != blob:
                    raise PublishConflict(
                        f"{path} changed on {self.remote_ref} since it was read",
                        hint=(
                            f"Discard the local edit (git checkout -- {path}), "
                            f"pull {self.remote_ref} and run the command again"
                        ),
                    )

        commit = self._commit_only(paths, message)
        log.info("committed", commit=commit.hexsha[:12])

        if remote_head is None:
            if self.has_remote:
                self._push(commit.hexsha)
            return commit.hexsha

        if not self.repo.is_ancestor(remote_head, "HEAD"):
            log.info("rebasing", onto=remote_head[:12])
            try:
                with self.repo.git.custom_environment(**self._git_env()):
                    self.repo.git.rebase("--autostash", remote_head)
            except GitCommandError as e:
                if self._rebase_in_progress():
                    self.repo.git.rebase("--abort")
                self._undo_commit()
                raise PublishConflict(
                    f"Could not rebase onto {self.remote_ref}",
                    hint=f"Pull {self.remote_ref} and run the command again",
                    details=str(e),
                ) from e

        head = self.repo.head.commit.hexsha
        self._push(head)
        return head

    def _commit_only(self, paths: list[str], message: str) -> Commit:
        """Commit ``paths`` alone; anything else already staged stays staged and uncommitted."""
        self.repo.index.add(paths)
        with self.repo.git.custom_environment(**self._git_env()):
            self.repo.git.commit("--only", "--no-verify", "--cleanup=verbatim", "-m", message, "--", *paths)
        return self.repo.head.commit

    def _push(self, sha: str) -> None:
        try:
            self.repo.git.push(self.remote, f"HEAD:refs/heads/{self.branch}")
        except GitCommandError as e:
            self._undo_commit()
            raise PublishConflict(
                f"Push to {self.remote_ref} was rejected",
                hint=f"Pull {self.remote_ref} and run the command again",
                details=e.stderr.strip() if e.stderr else str(e),
            ) from e
        logger.info("pushed", remote=self.remote_ref, commit=sha[:12])

    def _rebase_in_progress(self) -> bool:
        git_dir = Path(self.repo.git_dir)
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def _undo_commit(self) -> None:
        self.repo.git.reset("--soft", "HEAD~1")
        logger.warning("commit_undone", reason="publish conflict")
