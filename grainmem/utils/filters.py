"""
Builders for partition filter expressions (OpenSearch query_string syntax).

Every value is quoted and escaped so ids and names can never break out of
their term.
"""

from typing import Iterable, List

MATCH_ALL = '*:*'


def escape_filter_value(value: object) -> str:
    """Escape a value for use inside a double-quoted query_string term."""
    return str(value).replace('\\', '\\\\').replace('"', '\\"')


def eq(field: str, value: object) -> str:
    return f'{field}:"{escape_filter_value(value)}"'


def any_of(field: str, values: Iterable[object]) -> str:
    terms = [f'"{escape_filter_value(value)}"' for value in values]
    if not terms:
        raise ValueError('any_of requires at least one value')
    if len(terms) == 1:
        return f'{field}:{terms[0]}'
    return f'{field}:({" OR ".join(terms)})'


def all_of(*expressions: str) -> str:
    parts = [expr for expr in expressions if expr]
    if len(parts) == 1:
        return parts[0]
    return ' AND '.join(f'({expr})' for expr in parts)


def ids_filter(record_ids: Iterable[str]) -> str:
    return any_of('id', record_ids)


def chunked(values: List[str], size: int) -> List[List[str]]:
    return [values[i:i + size] for i in range(0, len(values), size)]


def exclude(expression: str) -> str:
    return f'NOT {expression}'
