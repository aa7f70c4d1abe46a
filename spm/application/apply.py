from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from spm.application.transform import uris_changed
from spm.crosscutting.logging import log_plan_applied
from spm.domain.entities import ApplyResult, ApplyState
from spm.domain.errors import SnapshotConflict
from spm.domain.ports import PlaylistGateway


logger = logging.getLogger(__name__)

BATCH_SIZE = 100


def split_into_batches(track_uris: Sequence[str], batch_size: int = BATCH_SIZE) -> List[List[str]]:
    """Split track URIs into batches.

    Args:
        track_uris: List of track URIs to split
        batch_size: Maximum number of URIs per batch

    Returns:
        List of batches, each containing up to batch_size URIs
    """
    batches = []
    for i in range(0, len(track_uris), batch_size):
        batches.append(list(track_uris[i:i + batch_size]))
    return batches


def assert_snapshot_unchanged(gateway: PlaylistGateway, playlist_id: str,
                              expected_snapshot: Optional[str]) -> None:
    """Raise SnapshotConflict if the playlist changed since expected_snapshot was captured.

    No remote call is made when no snapshot was captured. A missing current
    snapshot never fails the guard.
    """
    if not expected_snapshot:
        return
    current = gateway.get_snapshot_id(playlist_id)
    if current and current != expected_snapshot:
        logger.warning(f"Snapshot guard failed for playlist {playlist_id}: "
                       f"expected={expected_snapshot}, current={current}")
        raise SnapshotConflict(expected_snapshot, current)


def replace_playlist_tracks(gateway: PlaylistGateway, playlist_id: str,
                            track_uris: Sequence[str]) -> Optional[str]:
    """Replace the full playlist contents in batches of 100.

    The first batch replaces, every later batch appends. An empty list still
    issues one replace call so the playlist is cleared.

    Returns:
        Last snapshot token reported by the gateway, if any
    """
    batches = split_into_batches(track_uris)
    if not batches:
        return gateway.replace_items(playlist_id, [])

    snapshot = None
    for index, batch in enumerate(batches):
        if index == 0:
            new_snapshot = gateway.replace_items(playlist_id, batch)
        else:
            new_snapshot = gateway.add_items(playlist_id, batch)
        logger.debug(f"Batch {index} written to {playlist_id}: {len(batch)} tracks")
        snapshot = new_snapshot or snapshot
    return snapshot


def append_playlist_tracks(gateway: PlaylistGateway, playlist_id: str,
                           track_uris: Sequence[str], position: Optional[int] = None) -> Optional[str]:
    """Append tracks in batches of 100, advancing position when one is given."""
    snapshot = None
    for batch in split_into_batches(track_uris):
        new_snapshot = gateway.add_items(playlist_id, batch, position=position)
        snapshot = new_snapshot or snapshot
        if position is not None:
            position += len(batch)
    return snapshot


def apply_playlist_plan(gateway: PlaylistGateway,
                        action: str,
                        playlist_id: str,
                        before_uris: Sequence[str],
                        desired_uris: Sequence[str],
                        dropped_episodes: int,
                        apply: bool,
                        force: bool = False,
                        expected_snapshot: Optional[str] = None) -> ApplyResult:
    """Compare a planned URI list against the current one and optionally commit it.

    Args:
        gateway: Playlist gateway used for the guard and the writes
        action: Name of the planner that produced desired_uris
        playlist_id: Target playlist ID
        before_uris: Track URIs currently in the playlist
        desired_uris: Planned track URIs
        dropped_episodes: Episodes dropped by the planner
        apply: Commit the change; otherwise only preview it
        force: Skip the snapshot guard
        expected_snapshot: Snapshot token captured when the playlist was loaded

    Returns:
        ApplyResult with identical shape for preview and apply

    Raises:
        SnapshotConflict: If the playlist changed since it was loaded
    """
    changed = uris_changed(before_uris, desired_uris)
    before_count = len(before_uris)
    after_count = len(desired_uris)
    removed = max(0, before_count - after_count)
    logger.debug(f"{action} planned for {playlist_id}: state={ApplyState.PLANNED.value}, changed={changed}")

    if not apply or not changed:
        logger.info(f"{action} preview for {playlist_id}: {before_count} -> {after_count} tracks, changed={changed}")
        return ApplyResult(
            action=action,
            playlist_id=playlist_id,
            before_count=before_count,
            after_count=after_count,
            removed=removed,
            dropped_episodes=dropped_episodes,
            changed=changed,
            applied=False,
            snapshot_id=None,
            state=ApplyState.PREVIEW_ONLY,
        )

    if not force:
        try:
            assert_snapshot_unchanged(gateway, playlist_id, expected_snapshot)
        except SnapshotConflict:
            logger.info(f"{action} for {playlist_id}: state={ApplyState.GUARD_FAILED.value}")
            raise

    logger.info(f"{action} for {playlist_id}: state={ApplyState.APPLYING.value}")
    snapshot = replace_playlist_tracks(gateway, playlist_id, desired_uris)

    result = ApplyResult(
        action=action,
        playlist_id=playlist_id,
        before_count=before_count,
        after_count=after_count,
        removed=removed,
        dropped_episodes=dropped_episodes,
        changed=changed,
        applied=True,
        snapshot_id=snapshot,
        state=ApplyState.APPLIED,
    )
    log_plan_applied(logger, result)
    return result
