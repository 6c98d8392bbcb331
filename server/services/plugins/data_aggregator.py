"""DATA_AGGREGATOR plugin - reshape step outputs and run input.

Operations:
- merge: shallow-merge outputs of config.sources steps, then the step input
- pick / omit: keep or drop config.fields of input.data (or input)
- map: extract config.mapField from each item of input.data / input.array
- filter: keep items where item[filterField] <filterOp> filterValue
- reduce: fold items with reduceOp (sum, product, min, max, concat, count)
- flatten: flatten nested lists config.depth levels (default 1)

Output is always {"data": <result>, "operation": <operation>}.
"""

from typing import Any, Callable, Dict, List

from core.logging import get_logger
from services.engine.expressions import strict_equal
from services.engine.models import StepContext

logger = get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if _is_number(value):
        return value
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return float("nan")
    return int(number) if number.is_integer() else number


def _items(data: Dict[str, Any]) -> List[Any]:
    items = data.get("data")
    if items is None:
        items = data.get("array")
    return list(items) if isinstance(items, (list, tuple)) else []


def _source_object(data: Dict[str, Any]) -> Dict[str, Any]:
    source = data.get("data")
    return source if isinstance(source, dict) else data


def _field(item: Any, name: str) -> Any:
    if not name:
        return item
    return item.get(name) if isinstance(item, dict) else None


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(value: Any, target: Any) -> bool:
        if (_is_number(value) and _is_number(target)) or (isinstance(value, str) and isinstance(target, str)):
            return op(value, target)
        return False
    return compare


FILTER_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": strict_equal,
    "neq": lambda value, target: not strict_equal(value, target),
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "contains": lambda value, target: str(target) in str(value),
    "exists": lambda value, target: value is not None,
}


def _reduce(items: List[Any], field: str, op: str, initial: Any) -> Any:
    acc = initial
    for item in items:
        value = _field(item, field)
        if op == "sum":
            acc = _to_number(acc) + _to_number(value)
        elif op == "product":
            acc = _to_number(acc) * _to_number(value)
        elif op == "min":
            acc = min(_to_number(acc), _to_number(value))
        elif op == "max":
            acc = max(_to_number(acc), _to_number(value))
        elif op == "concat":
            acc = f"{acc}{value}"
        elif op == "count":
            acc = _to_number(acc) + 1
    return acc


def _flatten(items: List[Any], depth: int) -> List[Any]:
    result: List[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)) and depth > 0:
            result.extend(_flatten(list(item), depth - 1))
        else:
            result.append(item)
    return result


def aggregate(operation: str, config: Dict[str, Any], data: Dict[str, Any],
              steps: Dict[str, Dict[str, Any]]) -> Any:
    if operation == "merge":
        merged: Dict[str, Any] = {}
        for source in config.get("sources") or []:
            outputs = (steps.get(source) or {}).get("outputs")
            if isinstance(outputs, dict):
                merged.update(outputs)
        merged.update(data)
        return merged

    if operation == "pick":
        source = _source_object(data)
        return {name: source[name] for name in config.get("fields") or [] if name in source}

    if operation == "omit":
        source = _source_object(data)
        dropped = set(config.get("fields") or [])
        return {key: value for key, value in source.items() if key not in dropped}

    if operation == "map":
        items = _items(data)
        map_field = config.get("mapField")
        return [_field(item, map_field) for item in items] if map_field else items

    if operation == "filter":
        filter_field = config.get("filterField")
        target = config.get("filterValue")
        compare = FILTER_OPS.get(config.get("filterOp") or "eq")
        if compare is None:
            return _items(data)
        return [item for item in _items(data) if compare(_field(item, filter_field), target)]

    if operation == "reduce":
        initial = config.get("initialValue")
        return _reduce(_items(data), config.get("reduceField"), config.get("reduceOp") or "sum",
                       0 if initial is None else initial)

    if operation == "flatten":
        return _flatten(_items(data), int(config.get("depth") or 1))

    raise ValueError(f"Unknown DATA_AGGREGATOR operation: {operation}")


async def handle_data_aggregator(context: StepContext) -> Dict[str, Any]:
    operation = context.config.get("operation")
    try:
        result = aggregate(operation, context.config, context.input or {}, context.steps)
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Data aggregation failed", node_id=context.node_id, operation=operation, error=str(e))
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "output": {
            "data": result,
            "operation": operation,
        },
    }
