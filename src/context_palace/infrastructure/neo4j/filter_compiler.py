"""Safe filter compilation for Cypher queries.

Builds parameterised WHERE clauses from filter dictionaries so no caller
value is ever interpolated into query text.
"""

from typing import Any

_OPS = {
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "ne": "<>",
    "in": "IN",
    "contains": "CONTAINS",
    "startswith": "STARTS WITH",
}


def compile_filters(
    filters: dict[str, Any] | None,
    alias: str = "n",
    prefix: str = "p",
) -> tuple[str, dict[str, Any]]:
    """Compile a filter dictionary into a boolean expression and parameters.

    Args:
        filters: Dictionary of filters supporting:
            - Simple equality: {"field": "value"}
            - Operators: {"field__gte": 5, "field__in": [...]}
            - Logical groups: {"$or": [...], "$and": [...]}
            - Missing-property checks: {"field": None}
        alias: Node alias used in the query
        prefix: Parameter name prefix

    Returns:
        Tuple of (expression without ``WHERE``, parameters). The expression
        is empty when there is nothing to filter on.

    Examples:
        >>> compile_filters({"kind": "message", "timestamp__gte": 1.0})
        ("n.kind = $p_0 AND n.timestamp >= $p_1", {"p_0": "message", "p_1": 1.0})
    """
    if not filters:
        return "", {}

    params: dict[str, Any] = {}

    def bind(value: Any) -> str:
        name = f"{prefix}_{len(params)}"
        params[name] = value
        return f"${name}"

    def field_clause(key: str, value: Any) -> str:
        if "__" in key:
            field, op = key.split("__", 1)
            if op not in _OPS:
                raise ValueError(f"Unsupported filter operator: {op}")
            return f"{alias}.{field} {_OPS[op]} {bind(value)}"
        if value is None:
            return f"{alias}.{key} IS NULL"
        return f"{alias}.{key} = {bind(value)}"

    def process(filter_dict: dict[str, Any]) -> list[str]:
        clauses: list[str] = []
        for key, value in filter_dict.items():
            if key in ("$or", "$and"):
                joiner = " OR " if key == "$or" else " AND "
                parts = []
                for item in value:
                    sub = process(item)
                    if sub:
                        parts.append(sub[0] if len(sub) == 1 else f"({' AND '.join(sub)})")
                if parts:
                    clauses.append(parts[0] if len(parts) == 1 else f"({joiner.join(parts)})")
            else:
                clauses.append(field_clause(key, value))
        return clauses

    return " AND ".join(process(filters)), params
