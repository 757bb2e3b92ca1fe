"""ConflictResolver: merge same-key data contributions by load order.

Scalar keys: the package latest in load order wins. Append keys: every
contribution is concatenated in load order (list values are extended,
anything else is appended as one element).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from modcore.config import get_config
from modcore.events import emit, OverridesMerged
from modcore.log import get_logger

log = get_logger("conflicts")


@dataclass
class MergeResult:
    values: Dict[str, Any] = field(default_factory=dict)
    # key -> contributing package ids in load order (last one won for scalars)
    sources: Dict[str, List[str]] = field(default_factory=dict)

    def winner(self, key: str) -> str | None:
        ids = self.sources.get(key)
        return ids[-1] if ids else None

    def overridden(self) -> Dict[str, List[str]]:
        return {k: v for k, v in self.sources.items() if len(v) > 1}


class ConflictResolver:
    def __init__(self, append_keys: Iterable[str] | None = None) -> None:
        if append_keys is None:
            append_keys = get_config().conflicts.append_keys
        self._append_keys = set(append_keys)

    @property
    def append_keys(self) -> set[str]:
        return set(self._append_keys)

    def merge_overrides(
        self,
        load_order: Sequence[str],
        contributions: Mapping[str, Mapping[str, Any]],
        extra_append_keys: Iterable[str] = (),
    ) -> MergeResult:
        append = self._append_keys | set(extra_append_keys)
        result = MergeResult()
        for mod_id in load_order:
            data = contributions.get(mod_id)
            if not data:
                continue
            for key, value in data.items():
                previous = result.sources.setdefault(key, [])
                if key in append:
                    bucket = result.values.setdefault(key, [])
                    if isinstance(value, (list, tuple)):
                        bucket.extend(value)
                    else:
                        bucket.append(value)
                else:
                    if previous:
                        log.debug(
                            "key %s from %s overrides %s",
                            key,
                            mod_id,
                            previous[-1],
                        )
                    result.values[key] = value
                previous.append(mod_id)
        contributors = [m for m in load_order if contributions.get(m)]
        log.info(
            "merged %d key(s) from %d package(s)",
            len(result.values),
            len(contributors),
        )
        emit(OverridesMerged(keys=len(result.values), contributors=contributors))
        return result


__all__ = ["ConflictResolver", "MergeResult"]
