"""Diff planner turning two manifests into an ordered sync plan.

Decision rules (one action per path in the union of both manifests):

    | Source | Destination | Fingerprints | delete | Action |
    |--------|-------------|--------------|--------|--------|
    | yes    | no          | -            | -      | UPLOAD |
    | no     | yes         | -            | True   | DELETE |
    | no     | yes         | -            | False  | SKIP   |
    | yes    | yes         | equal        | -      | SKIP   |
    | yes    | yes         | different    | -      | UPDATE |

A fingerprint mismatch always overwrites the destination, whichever side
is newer. Directory entries never produce transfers; they are skipped,
except that a destination-only directory (an object-store marker key) is
deleted in mirror mode.
"""

from __future__ import annotations

import logging

from cicada.sync.types import Action, ActionType, Manifest, ManifestEntry, SyncPlan

logger = logging.getLogger(__name__)


def _compare(source: ManifestEntry, destination: ManifestEntry) -> ActionType:
    if source.is_dir or destination.is_dir:
        return ActionType.SKIP
    if source.fingerprint.matches(destination.fingerprint):
        return ActionType.SKIP
    return ActionType.UPDATE


def plan(source: Manifest, destination: Manifest, delete: bool = False) -> SyncPlan:
    """Merge-join two sorted manifests into a sync plan.

    Args:
        source: Manifest of the source tree.
        destination: Manifest of the destination tree.
        delete: Emit DELETE (instead of SKIP) for destination-only entries.

    Returns:
        SyncPlan with actions in path order.
    """
    src = source.entries
    dst = destination.entries
    actions: list[Action] = []
    i = j = 0

    while i < len(src) or j < len(dst):
        if j >= len(dst) or (i < len(src) and src[i].segments < dst[j].segments):
            entry = src[i]
            kind = ActionType.SKIP if entry.is_dir else ActionType.UPLOAD
            actions.append(Action(kind, source=entry))
            i += 1
        elif i >= len(src) or dst[j].segments < src[i].segments:
            entry = dst[j]
            kind = ActionType.DELETE if delete else ActionType.SKIP
            actions.append(Action(kind, destination=entry))
            j += 1
        else:
            actions.append(Action(_compare(src[i], dst[j]), source=src[i], destination=dst[j]))
            i += 1
            j += 1

    result = SyncPlan(tuple(actions))
    counts = result.counts()
    logger.debug(
        "Planned %d actions: upload=%d update=%d delete=%d skip=%d",
        len(result),
        counts[ActionType.UPLOAD],
        counts[ActionType.UPDATE],
        counts[ActionType.DELETE],
        counts[ActionType.SKIP],
    )
    return result
