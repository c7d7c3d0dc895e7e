"""
Folder tree management.

This module maintains each account's folder forest: user folders that live
only locally, and system folders mirrored from the server. Sibling sets
always carry contiguous sort keys (0..n-1) and the parent links never form
a cycle. Only ``custom`` folders can be renamed, moved or deleted.
"""
import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from mail_engine.models import (
    FOLDER_ARCHIVE,
    FOLDER_CUSTOM,
    FOLDER_DRAFTS,
    FOLDER_INBOX,
    FOLDER_SENT,
    FOLDER_SPAM,
    FOLDER_TRASH,
    Folder,
    RemoteFolder,
)
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import (
    FolderConflictError,
    FolderNotFoundError,
    ImmutableFolderError,
    ValidationError,
)


logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local:"
POSITION_BEFORE = "before"
POSITION_AFTER = "after"

# Special-use attributes (RFC 6154) mapped to folder kinds
_SPECIAL_USE = {
    "\\sent": FOLDER_SENT,
    "\\drafts": FOLDER_DRAFTS,
    "\\junk": FOLDER_SPAM,
    "\\trash": FOLDER_TRASH,
    "\\archive": FOLDER_ARCHIVE,
}

# Folders never mirrored: virtual "all mail" views duplicate every message
_SKIPPED_FLAGS = {"\\all", "\\noselect", "\\nonexistent"}


def detect_folder_type(name: str, flags: Iterable[str] = ()) -> str:
    """
    Classify a server folder.

    Special-use attributes win; otherwise the name is matched against
    common conventions. Anything unrecognised is ``custom``.
    """
    for flag in flags:
        folder_type = _SPECIAL_USE.get(flag.lower())
        if folder_type:
            return folder_type

    name_lower = name.lower()
    if name_lower == "inbox":
        return FOLDER_INBOX
    if "sent" in name_lower:
        return FOLDER_SENT
    if "draft" in name_lower:
        return FOLDER_DRAFTS
    if "trash" in name_lower or "deleted" in name_lower:
        return FOLDER_TRASH
    if "spam" in name_lower or "junk" in name_lower:
        return FOLDER_SPAM
    if "archive" in name_lower:
        return FOLDER_ARCHIVE
    return FOLDER_CUSTOM


def friendly_folder_name(remote_name: str, delimiter: str = "/") -> str:
    """Display name for a server folder: the last path segment."""
    if remote_name.upper() == "INBOX":
        return "Inbox"
    segment = remote_name.split(delimiter)[-1] if delimiter else remote_name
    return segment or remote_name


@dataclass(slots=True)
class ReconciledFolder:
    """A mirrored folder paired with what the server reported for it."""
    folder: Folder
    remote: RemoteFolder
    full_fetch: bool = False


class FolderManager:
    """
    Manages one account's folder tree.

    Multi-row changes (renumbering, subtree renames, cascading deletes) run
    in a single transaction so readers never see a half-applied reorder.
    """

    def __init__(self, account_id: int):
        self.account_id = account_id

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, folder_id: int, conn: Optional[sqlite3.Connection] = None) -> Folder:
        """
        Get a folder of this account.

        Raises:
            FolderNotFoundError: If missing or owned by another account.
        """
        folder = cache_repo.get_folder(folder_id, conn)
        if folder is None or folder.account_id != self.account_id:
            raise FolderNotFoundError(f"Folder {folder_id} not found")
        return folder

    def list_flat(self) -> List[Folder]:
        return cache_repo.list_folders(self.account_id)

    def tree(self) -> List[Folder]:
        """
        Build the folder forest.

        Returns:
            Root folders in sort order, each with ``children`` populated
            recursively in sort order.
        """
        folders = cache_repo.list_folders(self.account_id)
        by_id: Dict[int, Folder] = {f.id: f for f in folders}
        roots: List[Folder] = []
        for folder in folders:
            folder.children = []
        for folder in folders:
            parent = by_id.get(folder.parent_id) if folder.parent_id else None
            if parent is None:
                roots.append(folder)
            else:
                parent.children.append(folder)

        def _sort(nodes: List[Folder]) -> None:
            nodes.sort(key=lambda f: (f.sort_order, f.id))
            for node in nodes:
                _sort(node.children)

        _sort(roots)
        return roots

    def _descendant_ids(self, folder_id: int, conn: Optional[sqlite3.Connection] = None) -> List[int]:
        """IDs of every folder below ``folder_id`` (excluding itself)."""
        folders = cache_repo.list_folders(self.account_id, conn)
        children: Dict[Optional[int], List[int]] = {}
        for folder in folders:
            children.setdefault(folder.parent_id, []).append(folder.id)
        result: List[int] = []
        stack = list(children.get(folder_id, []))
        while stack:
            current = stack.pop()
            result.append(current)
            stack.extend(children.get(current, []))
        return result

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_custom(folder: Folder, action: str) -> None:
        if folder.folder_type != FOLDER_CUSTOM:
            raise ImmutableFolderError(f"Cannot {action} system folder '{folder.name}'")

    @staticmethod
    def _clean_name(name: str) -> str:
        clean = (name or "").strip()
        if not clean:
            raise ValidationError("Folder name cannot be empty")
        if "/" in clean:
            raise ValidationError("Folder name cannot contain '/'")
        return clean

    def _check_unique_name(self, parent_id: Optional[int], name: str,
                           exclude_id: Optional[int], conn: sqlite3.Connection) -> None:
        for sibling in cache_repo.list_siblings(self.account_id, parent_id, conn):
            if sibling.id != exclude_id and sibling.name.lower() == name.lower():
                raise FolderConflictError(f"A folder named '{name}' already exists here")

    def _local_path(self, parent_id: Optional[int], name: str, conn: sqlite3.Connection) -> str:
        parts = [name]
        seen = set()
        while parent_id is not None and parent_id not in seen:
            seen.add(parent_id)
            parent = cache_repo.get_folder(parent_id, conn)
            if parent is None:
                break
            parts.append(parent.name)
            parent_id = parent.parent_id
        return LOCAL_PREFIX + "/".join(reversed(parts))

    def _rewrite_subtree_paths(self, folder_id: int, conn: sqlite3.Connection) -> None:
        """Recompute remote names of custom descendants after a rename or move."""
        for child_id in self._descendant_ids(folder_id, conn):
            child = cache_repo.get_folder(child_id, conn)
            if child is None or child.folder_type != FOLDER_CUSTOM:
                continue
            path = self._local_path(child.parent_id, child.name, conn)
            cache_repo.update_folder_location(child.id, child.parent_id, child.name, path, conn)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def create(self, name: str, parent_id: Optional[int] = None) -> Folder:
        """
        Create a local custom folder at the end of its sibling set.

        Raises:
            ValidationError: If the name is empty or contains '/'.
            FolderNotFoundError: If ``parent_id`` is not a folder of this account.
            FolderConflictError: If a sibling already has this name.
        """
        clean_name = self._clean_name(name)
        with db.transaction() as conn:
            if parent_id is not None:
                self.get(parent_id, conn)
            self._check_unique_name(parent_id, clean_name, None, conn)
            siblings = cache_repo.list_siblings(self.account_id, parent_id, conn)
            folder = Folder(
                account_id=self.account_id,
                parent_id=parent_id,
                name=clean_name,
                remote_name=self._local_path(parent_id, clean_name, conn),
                folder_type=FOLDER_CUSTOM,
                delimiter="/",
                sort_order=len(siblings),
            )
            try:
                cache_repo.insert_folder(folder, conn)
            except sqlite3.IntegrityError as e:
                raise FolderConflictError(f"Folder '{clean_name}' already exists") from e
        logger.info("Created folder %s '%s' in account %s", folder.id, clean_name, self.account_id)
        return folder

    def rename(self, folder_id: int, new_name: str) -> Folder:
        """
        Rename a custom folder; descendants' paths follow.

        Raises:
            ImmutableFolderError: If the folder is a system folder.
            FolderConflictError: If a sibling already has the new name.
        """
        clean_name = self._clean_name(new_name)
        with db.transaction() as conn:
            folder = self.get(folder_id, conn)
            self._require_custom(folder, "rename")
            self._check_unique_name(folder.parent_id, clean_name, folder.id, conn)
            folder.name = clean_name
            folder.remote_name = self._local_path(folder.parent_id, clean_name, conn)
            cache_repo.update_folder_location(folder.id, folder.parent_id, folder.name,
                                              folder.remote_name, conn)
            self._rewrite_subtree_paths(folder.id, conn)
        logger.info("Renamed folder %s to '%s'", folder_id, clean_name)
        return folder

    def delete(self, folder_id: int) -> int:
        """
        Delete a custom folder, its subfolders and all their messages.

        Returns:
            The number of messages deleted.

        Raises:
            ImmutableFolderError: If the folder is a system folder.
        """
        with db.transaction() as conn:
            folder = self.get(folder_id, conn)
            self._require_custom(folder, "delete")
            doomed = [folder.id] + self._descendant_ids(folder.id, conn)
            removed = cache_repo.delete_folders(doomed, conn)
            remaining = cache_repo.list_siblings(self.account_id, folder.parent_id, conn)
            cache_repo.set_sort_orders([f.id for f in remaining], conn)
        logger.info("Deleted folder %s (%d subfolders, %d messages)",
                    folder_id, len(doomed) - 1, removed)
        return removed

    def move(self, folder_id: int, new_parent_id: Optional[int],
             target_id: Optional[int] = None, position: Optional[str] = None) -> Folder:
        """
        Reparent a custom folder.

        Without a target the folder is appended to the new sibling set;
        with ``target_id`` and ``position`` it is placed before or after
        that sibling. Both the old and new sibling sets are renumbered.

        Raises:
            ImmutableFolderError: If the folder is a system folder.
            FolderConflictError: If the move would create a cycle or a
                duplicate sibling name.
            ValidationError: If the target is not in the new sibling set or
                the position is invalid.
        """
        if target_id is not None and position not in (POSITION_BEFORE, POSITION_AFTER):
            raise ValidationError("position must be 'before' or 'after'")

        with db.transaction() as conn:
            folder = self.get(folder_id, conn)
            self._require_custom(folder, "move")
            if new_parent_id is not None:
                self.get(new_parent_id, conn)
                if new_parent_id == folder.id or new_parent_id in self._descendant_ids(folder.id, conn):
                    raise FolderConflictError("Cannot move a folder into itself or its subfolders")
            self._check_unique_name(new_parent_id, folder.name, folder.id, conn)

            old_parent_id = folder.parent_id
            if old_parent_id != new_parent_id:
                old_siblings = [f.id for f in cache_repo.list_siblings(self.account_id, old_parent_id, conn)
                                if f.id != folder.id]
                cache_repo.set_sort_orders(old_siblings, conn)

            new_siblings = [f.id for f in cache_repo.list_siblings(self.account_id, new_parent_id, conn)
                            if f.id != folder.id]
            if target_id is None:
                new_siblings.append(folder.id)
            else:
                if target_id not in new_siblings:
                    raise ValidationError("Target folder is not a sibling in the destination")
                index = new_siblings.index(target_id)
                new_siblings.insert(index if position == POSITION_BEFORE else index + 1, folder.id)

            folder.parent_id = new_parent_id
            folder.remote_name = self._local_path(new_parent_id, folder.name, conn)
            cache_repo.update_folder_location(folder.id, new_parent_id, folder.name,
                                              folder.remote_name, conn)
            cache_repo.set_sort_orders(new_siblings, conn)
            self._rewrite_subtree_paths(folder.id, conn)
            folder.sort_order = new_siblings.index(folder.id)

        logger.info("Moved folder %s under %s", folder_id, new_parent_id)
        return folder

    def reorder_relative(self, folder_id: int, target_id: int, position: str) -> Folder:
        """
        Place a folder immediately before or after another folder.

        The folder joins the target's sibling set if it is not already in
        it. The whole sibling set is renumbered 0..n-1.
        """
        if folder_id == target_id:
            raise ValidationError("Cannot reorder a folder relative to itself")
        target = self.get(target_id)
        return self.move(folder_id, target.parent_id, target_id=target.id, position=position)

    def mark_all_read(self, folder_id: int) -> int:
        """Mark every message in the folder read; returns how many changed."""
        self.get(folder_id)
        count = cache_repo.mark_folder_read(folder_id)
        logger.info("Marked %d messages read in folder %s", count, folder_id)
        return count

    # ------------------------------------------------------------------
    # Server reconciliation
    # ------------------------------------------------------------------

    def reconcile_remote(self, remote_folders: Iterable[RemoteFolder]) -> List[ReconciledFolder]:
        """
        Mirror the server's system folders into the local tree.

        Unseen system folders are created at the end of the root sibling
        set, and display names of existing ones are refreshed. Server
        folders that are not system kinds are left alone, since custom
        folders are maintained locally. A changed UIDVALIDITY or a UIDNEXT
        that went backwards marks the folder for a full re-fetch.

        Watermarks are not written here; the sync engine advances them once
        a folder's batch has been processed.

        Returns:
            One entry per mirrored folder, in server order.
        """
        result: List[ReconciledFolder] = []
        for remote in remote_folders:
            if any(flag.lower() in _SKIPPED_FLAGS for flag in remote.flags):
                continue
            folder_type = detect_folder_type(remote.name, remote.flags)
            if folder_type == FOLDER_CUSTOM:
                logger.debug("Not mirroring server folder %s", remote.name)
                continue

            display_name = friendly_folder_name(remote.name, remote.delimiter)
            existing = cache_repo.get_folder_by_remote_name(self.account_id, remote.name)
            if existing is None:
                with db.transaction() as conn:
                    roots = cache_repo.list_siblings(self.account_id, None, conn)
                    folder = cache_repo.insert_folder(Folder(
                        account_id=self.account_id,
                        name=display_name,
                        remote_name=remote.name,
                        folder_type=folder_type,
                        delimiter=remote.delimiter or "/",
                        sort_order=len(roots),
                    ), conn)
                logger.info("Mirrored new server folder %s as %s", remote.name, folder_type)
                result.append(ReconciledFolder(folder=folder, remote=remote, full_fetch=True))
                continue

            if existing.name != display_name or existing.delimiter != (remote.delimiter or "/"):
                cache_repo.update_folder_remote_meta(existing.id, display_name, remote.delimiter or "/")
                existing.name = display_name
                existing.delimiter = remote.delimiter or "/"

            result.append(ReconciledFolder(
                folder=existing,
                remote=remote,
                full_fetch=self.is_discontinuous(existing, remote),
            ))
        return result

    @staticmethod
    def is_discontinuous(folder: Folder, remote: RemoteFolder) -> bool:
        """
        True when the server mailbox was reset since the last sync.

        A different UIDVALIDITY means every stored UID is meaningless; a
        UIDNEXT lower than the stored one means the mailbox was recreated.
        """
        if folder.uid_validity is not None and remote.uid_validity is not None \
                and folder.uid_validity != remote.uid_validity:
            return True
        if folder.uid_next is not None and remote.uid_next is not None \
                and remote.uid_next < folder.uid_next:
            return True
        return False
