"""Shape/type hint table: seeding, whole-graph inference and unification.

Inference runs every node's shape rule on meta-device tensors, so no data is
allocated. It is best effort: a node whose op has no rule, whose inputs have
no hint, or whose rule raises simply leaves its outputs without an entry.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import torch
import torch.nn.functional as F

from backend_cutting.graph_ir import Graph, Node, TensorShape
from backend_cutting.weight_store import shapes_of, tensor_shape

logger = logging.getLogger(__name__)

ShapeHints = Dict[str, TensorShape]
ShapeLike = Union[TensorShape, Sequence[int]]
ShapeRule = Callable[..., Union[torch.Tensor, Tuple[torch.Tensor, ...]]]

_SHAPE_RULES: Dict[str, ShapeRule] = {}


def register_shape_rule(*op_types: str):
    """Decorator registering `fn(node, *meta_inputs)` for the given op types."""

    def wrap(fn: ShapeRule) -> ShapeRule:
        for op_type in op_types:
            _SHAPE_RULES[op_type] = fn
        return fn

    return wrap


def has_shape_rule(op_type: str) -> bool:
    return op_type in _SHAPE_RULES


def as_tensor_shape(value: ShapeLike) -> TensorShape:
    if isinstance(value, TensorShape):
        return value
    return TensorShape(dims=tuple(int(d) for d in value))


def _meta(shape: TensorShape) -> torch.Tensor:
    return torch.empty(shape.dims, dtype=shape.dtype, device="meta")


def _as_tuple(v, n: int) -> Tuple[int, ...]:
    if isinstance(v, int):
        return (v,) * n
    return tuple(int(x) for x in v)


def _parse_dtype(v) -> torch.dtype:
    if isinstance(v, torch.dtype):
        return v
    dtype = getattr(torch, str(v).replace("torch.", ""), None)
    if not isinstance(dtype, torch.dtype):
        raise ValueError(f"Unknown dtype {v!r}")
    return dtype


# ---------------------------------------------------------------------------
# Shape rules
# ---------------------------------------------------------------------------

_BINARY = {"Add": torch.add, "Sub": torch.sub, "Mul": torch.mul, "Div": torch.div}
_UNARY = {
    "Relu": torch.relu,
    "Sigmoid": torch.sigmoid,
    "Tanh": torch.tanh,
    "Exp": torch.exp,
    "Neg": torch.neg,
    "Sqrt": torch.sqrt,
}


@register_shape_rule(*_BINARY)
def _binary(node: Node, a, b):
    return _BINARY[node.op_type](a, b)


@register_shape_rule(*_UNARY)
def _unary(node: Node, x):
    return _UNARY[node.op_type](x)


@register_shape_rule("Identity", "Copy")
def _identity(node: Node, *xs):
    return tuple(torch.empty_like(x) for x in xs)


@register_shape_rule("MatMul")
def _matmul(node: Node, a, b):
    return torch.matmul(a, b)


@register_shape_rule("FC", "Linear")
def _linear(node: Node, x, w, b=None):
    return F.linear(x, w, b)


@register_shape_rule("Conv")
def _conv(node: Node, x, w, b=None):
    spatial = x.dim() - 2
    conv = {1: F.conv1d, 2: F.conv2d, 3: F.conv3d}[spatial]
    return conv(
        x,
        w,
        b,
        stride=_as_tuple(node.attrs.get("stride", 1), spatial),
        padding=_as_tuple(node.attrs.get("padding", 0), spatial),
        dilation=_as_tuple(node.attrs.get("dilation", 1), spatial),
        groups=int(node.attrs.get("groups", 1)),
    )


@register_shape_rule("Softmax")
def _softmax(node: Node, x):
    return torch.softmax(x, dim=int(node.attrs.get("axis", -1)))


@register_shape_rule("Reshape")
def _reshape(node: Node, x):
    return x.reshape(tuple(node.attrs["shape"]))


@register_shape_rule("Flatten")
def _flatten(node: Node, x):
    axis = int(node.attrs.get("axis", 1))
    return x.reshape(math.prod(x.shape[:axis]), -1)


@register_shape_rule("Transpose")
def _transpose(node: Node, x):
    perm = node.attrs.get("perm")
    if perm is None:
        perm = tuple(reversed(range(x.dim())))
    return x.permute(*perm)


@register_shape_rule("Concat")
def _concat(node: Node, *xs):
    return torch.cat(xs, dim=int(node.attrs.get("axis", 0)))


@register_shape_rule("Cast")
def _cast(node: Node, x):
    return x.to(_parse_dtype(node.attrs["to"]))


# ---------------------------------------------------------------------------
# Inference and unification
# ---------------------------------------------------------------------------

def infer_shapes(graph: Graph, seed_hints: Mapping[str, TensorShape]) -> ShapeHints:
    """Propagate shapes through `graph` in node order. Seeds are never overwritten."""
    hints: ShapeHints = dict(seed_hints)
    for node in graph.nodes:
        if node.outputs and all(o in hints for o in node.outputs):
            continue
        rule = _SHAPE_RULES.get(node.op_type)
        if rule is None:
            logger.debug("No shape rule for op %s", node.op_type)
            continue
        missing = [i for i in node.inputs if i not in hints]
        if missing:
            logger.debug("Cannot infer %s: unknown input shapes %s", node.describe(), missing)
            continue
        try:
            result = rule(node, *(_meta(hints[i]) for i in node.inputs))
        except (RuntimeError, ValueError, TypeError, KeyError, IndexError) as e:
            logger.debug("Shape rule for %s failed: %s", node.describe(), e)
            continue
        if isinstance(result, torch.Tensor):
            result = (result,)
        for name, value in zip(node.outputs, result):
            hints.setdefault(name, tensor_shape(value))
    return hints


def unify_shape_hints(
    graph: Graph,
    weight_store,
    input_shape_hints: Optional[Mapping[str, ShapeLike]] = None,
    source_mapping: Optional[Mapping[str, str]] = None,
) -> ShapeHints:
    """Merge store shapes, caller hints and inferred shapes into one table.

    `graph` is the renamed graph and `weight_store` the matching (mapped)
    view. Caller hints keyed by an original source name are re-keyed through
    `source_mapping` (original -> renamed) and take precedence over the
    store's shapes.
    """
    source_mapping = source_mapping or {}
    known = graph.tensor_names()
    seeds: ShapeHints = shapes_of(weight_store)
    for name, shape in (input_shape_hints or {}).items():
        renamed = source_mapping.get(name)
        if renamed is not None and renamed != name:
            logger.info("Adding input hint: %s (for %s)", renamed, name)
            name = renamed
        if name not in known:
            logger.debug("Dropping hint for %s: not a tensor of the graph", name)
            continue
        seeds[name] = as_tensor_shape(shape)
    return infer_shapes(graph, seeds)
