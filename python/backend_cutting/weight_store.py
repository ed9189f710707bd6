"""Runtime weight store: tensor name -> concrete tensor value.

The store is owned by the caller. The rewrite reads names and shapes from it
and, once the whole rewrite succeeded, deletes weights that the rewritten
graph no longer reads.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Mapping, Optional

import torch

from backend_cutting.graph_ir import TensorShape

logger = logging.getLogger(__name__)


def tensor_shape(value: torch.Tensor) -> TensorShape:
    return TensorShape(dims=tuple(int(d) for d in value.shape), dtype=value.dtype)


class WeightStore:
    """Mutable name -> tensor mapping."""

    def __init__(self, tensors: Optional[Mapping[str, torch.Tensor]] = None):
        self._tensors: Dict[str, torch.Tensor] = dict(tensors or {})

    def __contains__(self, name: str) -> bool:
        return name in self._tensors

    def __len__(self) -> int:
        return len(self._tensors)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._tensors))

    def names(self) -> List[str]:
        return list(self._tensors)

    def has(self, name: str) -> bool:
        return name in self._tensors

    def get(self, name: str) -> torch.Tensor:
        try:
            return self._tensors[name]
        except KeyError:
            raise KeyError(f"Weight '{name}' doesn't exist in the store") from None

    def set(self, name: str, value: torch.Tensor) -> None:
        self._tensors[name] = value

    def delete(self, name: str) -> None:
        """Remove `name`; deleting a missing name is a no-op."""
        if self._tensors.pop(name, None) is not None:
            logger.debug("Removed weight %s", name)

    def shape_of(self, name: str) -> TensorShape:
        return tensor_shape(self.get(name))


class MappedWeightStore:
    """Read-only view of the weights one rewrite reads, under their renamed names.

    Only names in `mapping` (renamed -> original) are weights. A declared
    external input is never one, even when the store holds a tensor under
    the same name.
    """

    def __init__(self, store: WeightStore, mapping: Mapping[str, str]):
        self._store = store
        self._mapping = dict(mapping)

    def original_name(self, name: str) -> str:
        return self._mapping.get(name, name)

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def names(self) -> List[str]:
        return list(self._mapping)

    def has(self, name: str) -> bool:
        return name in self._mapping

    def get(self, name: str) -> torch.Tensor:
        if name not in self._mapping:
            raise KeyError(f"'{name}' is not a weight of this graph")
        return self._store.get(self._mapping[name])

    def shape_of(self, name: str) -> TensorShape:
        return tensor_shape(self.get(name))


def shapes_of(store) -> Dict[str, TensorShape]:
    """Concrete shapes of every tensor currently held in `store`."""
    return {name: store.shape_of(name) for name in store.names()}
