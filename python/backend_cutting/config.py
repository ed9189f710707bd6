"""Configuration for the backend-cutting transformer."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

_ENV_PREFIX = "BACKEND_CUTTING_"
_TRUE = {"1", "true", "True", "yes"}


@dataclass(frozen=True)
class TransformerConfig:
    # Engine build parameters, recorded on every opaque node.
    max_batch_size: int = 1
    max_workspace_size: int = 1 << 30
    log_verbosity: int = 0

    # Bake boundary weights into the serialized engine. Baked weights are no
    # longer read by the rewritten graph and get pruned from the store.
    embed_weights: bool = True

    # When set, a readable dump of every converted subgraph is written here.
    debug_dump_path: Optional[str] = None

    require_boundary_shapes: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TransformerConfig":
        """Build a config from BACKEND_CUTTING_<FIELD> environment variables.

        Example:
          BACKEND_CUTTING_MAX_BATCH_SIZE=8 BACKEND_CUTTING_EMBED_WEIGHTS=0
        """
        env = os.environ if environ is None else environ
        kwargs = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                kwargs[f.name] = raw in _TRUE
            elif isinstance(default, int):
                kwargs[f.name] = int(raw, 0)
            else:
                kwargs[f.name] = raw or None
        return cls(**kwargs)
