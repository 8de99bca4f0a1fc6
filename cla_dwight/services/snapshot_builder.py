"""Snapshot builder: turns per-version signature lists into the served cache entry.

A Snapshot is immutable: every change (reload, local upload) produces a
new one, and the published reference is swapped in one assignment.

Signature ordering rule, applied to every signee list:
  1. created_at descending
  2. gist_committed_at descending (newer CLA version wins a tie)
  3. updated_at descending
Anything still tied keeps its input order. Index 0 is therefore the
signature that decides whether a signee holds a valid CLA.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..schemas.signature import DocumentIdentity, Signature

logger = logging.getLogger(__name__)

# Stand-in for a missing timestamp; sorts below every real one.
_NEVER = datetime.min.replace(tzinfo=timezone.utc)

SOURCE_UPSTREAM = "upstream"
SOURCE_FALLBACK = "fallback"

_EMPTY: Mapping[str, Tuple[Signature, ...]] = MappingProxyType({})


def signature_sort_key(signature: Signature) -> Tuple[datetime, datetime, datetime]:
    return (
        signature.created_at,
        signature.gist_committed_at or _NEVER,
        signature.updated_at or _NEVER,
    )


def sort_signatures(signatures: Iterable[Signature]) -> Tuple[Signature, ...]:
    """Newest first by the signature ordering rule (stable for full ties)."""
    return tuple(sorted(signatures, key=signature_sort_key, reverse=True))


def group_by_user(
    signatures: Iterable[Signature],
    into: Optional[Dict[str, List[Signature]]] = None,
) -> Dict[str, List[Signature]]:
    """Append each signature to the list of its subject, preserving input order."""
    groups = into if into is not None else {}
    for signature in signatures:
        groups.setdefault(signature.user, []).append(signature)
    return groups


@dataclass(frozen=True)
class Snapshot:
    """One published, read-only state of the signature cache."""

    identity: DocumentIdentity
    signatories: Mapping[str, Tuple[Signature, ...]]
    built_at: datetime
    source: str = SOURCE_UPSTREAM
    lookup: Mapping[str, Tuple[Signature, ...]] = field(default_factory=lambda: _EMPTY)

    @property
    def timestamp(self) -> datetime:
        return self.built_at

    @property
    def signature_count(self) -> int:
        return sum(len(signatures) for signatures in self.signatories.values())

    def get(self, key: str) -> Tuple[Signature, ...]:
        """Signatures of a subject, falling back to the alternate lookup index."""
        found = self.signatories.get(key)
        if found:
            return found
        return self.lookup.get(key, ())

    def contains_signature(self, signature: Signature) -> bool:
        if signature.id is None:
            return signature in self.signatories.get(signature.user, ())
        return any(s.id == signature.id for s in self.signatories.get(signature.user, ()))

    def ordered_signatories(self) -> List[Tuple[str, Tuple[Signature, ...]]]:
        """Signees ordered by their most recent signature, newest first."""
        return sorted(
            self.signatories.items(),
            key=lambda item: signature_sort_key(item[1][0]),
            reverse=True,
        )

    def custom_field_names(self) -> List[str]:
        """Every custom field used by any signature, in first-seen order.

        Custom fields differ between CLA versions, so a table of all
        signatures needs the union of them.
        """
        names: Dict[str, None] = {}
        for signatures in self.signatories.values():
            for signature in signatures:
                for name in signature.custom_fields or {}:
                    names.setdefault(name, None)
        return list(names)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now(timezone.utc)) - self.built_at


class SnapshotBuilder:
    """Builds Snapshots and merges local signatures into them.

    Args:
        lookup_fields: Custom fields whose values also identify a signee.
        coalesce_lookup: When one lookup value belongs to several subjects,
            True merges all their signatures under that value; False leaves
            the ambiguous value out of the index.
    """

    def __init__(self, lookup_fields: Sequence[str] = (), coalesce_lookup: bool = True):
        self.lookup_fields = tuple(lookup_fields)
        self.coalesce_lookup = coalesce_lookup

    def build(
        self,
        identity: DocumentIdentity,
        per_version_signatures: Sequence[Sequence[Signature]],
        local_signatures: Sequence[Signature] = (),
        source: str = SOURCE_UPSTREAM,
    ) -> Snapshot:
        """Flatten the per-version lists, group by subject, fold in local records, sort."""
        groups: Dict[str, List[Signature]] = {}
        for signatures in per_version_signatures:
            group_by_user(signatures, into=groups)
        group_by_user(local_signatures, into=groups)
        return self._finish(identity, groups, source)

    def from_signatories(
        self,
        identity: DocumentIdentity,
        signatories: Mapping[str, Sequence[Signature]],
        source: str = SOURCE_FALLBACK,
        built_at: Optional[datetime] = None,
    ) -> Snapshot:
        """Snapshot from an already grouped map, e.g. one read from the file cache.

        Pass *built_at* to keep the age of the original data visible.
        """
        groups = {user: list(signatures) for user, signatures in signatories.items() if signatures}
        return self._finish(identity, groups, source, built_at)

    def merge_local(self, snapshot: Snapshot, local_signatures: Iterable[Signature]) -> Snapshot:
        """Return *snapshot* plus any local signature it does not hold yet.

        Only the affected signees are re-sorted. The build timestamp is kept:
        it dates the upstream data, which did not change.
        """
        added: Dict[str, List[Signature]] = {}
        seen_ids: Set[str] = set()
        for signature in local_signatures:
            if signature.id is not None and signature.id in seen_ids:
                continue
            if snapshot.contains_signature(signature):
                continue
            if signature.id is not None:
                seen_ids.add(signature.id)
            added.setdefault(signature.user, []).append(signature)

        if not added:
            return snapshot

        signatories = dict(snapshot.signatories)
        for user, signatures in added.items():
            signatories[user] = sort_signatures([*signatories.get(user, ()), *signatures])

        return replace(
            snapshot,
            signatories=MappingProxyType(signatories),
            lookup=self._index_lookup(signatories),
        )

    def _finish(
        self,
        identity: DocumentIdentity,
        groups: Dict[str, List[Signature]],
        source: str,
        built_at: Optional[datetime] = None,
    ) -> Snapshot:
        signatories = {user: sort_signatures(signatures) for user, signatures in groups.items()}
        snapshot = Snapshot(
            identity=identity,
            signatories=MappingProxyType(signatories),
            built_at=built_at or datetime.now(timezone.utc),
            source=source,
            lookup=self._index_lookup(signatories),
        )
        logger.debug(
            "Snapshot built",
            extra={
                "source": source,
                "signatories": len(signatories),
                "signatures": snapshot.signature_count,
            },
        )
        return snapshot

    def _index_lookup(self, signatories: Mapping[str, Tuple[Signature, ...]]) -> Mapping[str, Tuple[Signature, ...]]:
        """Index signees by the values of the configured lookup fields.

        Every signature of a subject is reachable through any lookup value the
        subject ever signed with. A value shared by distinct subjects collapses
        them into one list (or is dropped, see ``coalesce_lookup``); this can
        count administratively separate accounts as one person.
        """
        if not self.lookup_fields:
            return _EMPTY

        owners: Dict[str, Set[str]] = {}
        for user, signatures in signatories.items():
            for signature in signatures:
                custom_fields = signature.custom_fields or {}
                for name in self.lookup_fields:
                    value = custom_fields.get(name)
                    if value is None or str(value).strip() == "":
                        continue
                    owners.setdefault(str(value).strip(), set()).add(user)

        index: Dict[str, Tuple[Signature, ...]] = {}
        for value, users in owners.items():
            if len(users) > 1:
                if not self.coalesce_lookup:
                    logger.warning(
                        "Lookup value %r shared by %d signees, not indexed", value, len(users),
                    )
                    continue
                logger.info("Lookup value %r coalesces signees %s", value, sorted(users))
            index[value] = sort_signatures(
                signature for user in sorted(users) for signature in signatories[user]
            )
        return MappingProxyType(index)
