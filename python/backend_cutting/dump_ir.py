#!/usr/bin/env python3
"""Deserialize a serialized subgraph engine and print it.

Usage:
    python -m backend_cutting.dump_ir path/to/engine.bin
"""

import logging
import sys
from pathlib import Path

from backend_cutting.serialize import TYPE_NAMES, SubgraphIR, deserialize_subgraph


def _flags(v) -> str:
    flags = []
    if v.is_input:
        flags.append(f"INPUT[{v.input_index}]")
    if v.is_output:
        flags.append("OUTPUT")
    if v.is_initializer:
        flags.append(f"CONST({len(v.data)} bytes)")
    return " ".join(flags)


def format_subgraph(ir: SubgraphIR, show_data: bool = False) -> str:
    """Render a SubgraphIR as a human-readable listing."""
    lines = [
        f"Subgraph: {len(ir.nodes)} node(s), {len(ir.values)} boundary value(s)",
        "=" * 90,
    ]
    for key in sorted(ir.metadata):
        lines.append(f"  {key}: {ir.metadata[key]}")
    lines.append("-" * 90)

    for v in ir.values:
        ttype = TYPE_NAMES.get(v.tensor_type, f"type_{v.tensor_type}")
        dims = ",".join(str(d) for d in v.dims)
        lines.append(f"  {v.name:30s}  {ttype:4s}  ({dims:20s})  {_flags(v)}")
        if show_data and v.is_initializer:
            values = v.to_tensor().reshape(-1).tolist()
            preview = ", ".join(str(x) for x in values[:8])
            more = ", ..." if len(values) > 8 else ""
            lines.append(f"      [{preview}{more}]")
    lines.append("-" * 90)

    for i, n in enumerate(ir.nodes):
        line = f"  n{i:3d}  {n.op_type:20s}  ({', '.join(n.inputs)}) -> ({', '.join(n.outputs)})"
        if n.attrs:
            line += "  " + " ".join(f"{k}={v}" for k, v in sorted(n.attrs.items()))
        lines.append(line)

    lines.append("=" * 90)
    return "\n".join(lines)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if not argv:
        print("Usage: python -m backend_cutting.dump_ir <engine_file>")
        sys.exit(1)

    path = Path(argv[0])
    print(f"Loading {path} ({path.stat().st_size:,} bytes)")
    ir = deserialize_subgraph(path.read_bytes())
    print(format_subgraph(ir, show_data="--data" in argv[1:]))


if __name__ == "__main__":
    main()
