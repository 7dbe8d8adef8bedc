"""Conditions - Traduction des filtres déclaratifs en clauses SQLAlchemy.

Responsabilité (SRP) : transformer une liste de filtres en clauses WHERE.
- Parsing et validation de tous les filtres AVANT de toucher au Select
- Une clause par filtre, combinées en AND
- Pas d'exécution de requête, pas d'accès session

Syntaxe acceptée par parse_conditions():
    {'name': 'alice'}                          -> name = 'alice'
    [('name', 'alice')]                        -> name = 'alice'
    [('age', 'BETWEEN', [18, 30])]             -> age BETWEEN 18 AND 30
    [('created_at', 'DATE >', '2024-01-01')]   -> date(created_at) > '2024-01-01'
    [('posts', 'HAS', lambda Post: Post.title == 'x')]
"""
import operator
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from collections.abc import Iterable, Mapping
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Date, extract, func, not_, text
from sqlalchemy.orm import RelationshipProperty, with_polymorphic
from sqlalchemy.sql import Select

from repositories.exceptions import InvalidConditionError


class ConditionKind(str, Enum):
    """Types de conditions supportés."""
    EQUALS = 'EQUALS'
    COMPARE = 'COMPARE'
    IN = 'IN'
    NOTIN = 'NOTIN'
    DATE = 'DATE'
    DAY = 'DAY'
    MONTH = 'MONTH'
    YEAR = 'YEAR'
    EXISTS = 'EXISTS'
    HAS = 'HAS'
    HASMORPH = 'HASMORPH'
    DOESNTHAVE = 'DOESNTHAVE'
    DOESNTHAVEMORPH = 'DOESNTHAVEMORPH'
    BETWEEN = 'BETWEEN'
    NOTBETWEEN = 'NOTBETWEEN'
    BETWEENCOLUMNS = 'BETWEENCOLUMNS'
    NOTBETWEENCOLUMNS = 'NOTBETWEENCOLUMNS'
    RAW = 'RAW'


# EQUALS et COMPARE ne s'écrivent pas comme mot-clé
KEYWORDS = {
    kind.value: kind for kind in ConditionKind
    if kind not in (ConditionKind.EQUALS, ConditionKind.COMPARE)
}

ARRAY_KINDS = {ConditionKind.IN, ConditionKind.NOTIN}
RANGE_KINDS = {
    ConditionKind.BETWEEN, ConditionKind.NOTBETWEEN,
    ConditionKind.BETWEENCOLUMNS, ConditionKind.NOTBETWEENCOLUMNS,
}
DATE_PART_KINDS = {ConditionKind.DAY, ConditionKind.MONTH, ConditionKind.YEAR}
CALLBACK_KINDS = {
    ConditionKind.EXISTS, ConditionKind.HAS, ConditionKind.HASMORPH,
    ConditionKind.DOESNTHAVE, ConditionKind.DOESNTHAVEMORPH,
}

DATE_OPERATORS: Dict[str, Callable] = {
    '=': operator.eq,
    '==': operator.eq,
    '!=': operator.ne,
    '<>': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}

# Whitelist pour le fallback "mot-clé = opérateur" (ex: 'age', '<>', 3)
COMPARISON_OPERATORS: Dict[str, Callable] = {
    **DATE_OPERATORS,
    'like': lambda column, value: column.like(value),
    'not like': lambda column, value: column.not_like(value),
    'ilike': lambda column, value: column.ilike(value),
    'not ilike': lambda column, value: column.not_ilike(value),
}


@dataclass(frozen=True)
class Condition:
    """Un filtre validé, prêt à être traduit en clause SQL.

    Attributes:
        field: Nom de colonne ou de relation (ignoré pour EXISTS et RAW)
        kind: Type de condition
        value: Opérande, déjà normalisé (date, int, liste...)
        operator: Opérateur de comparaison (DATE/DAY/MONTH/YEAR et COMPARE)
    """
    field: Optional[str]
    kind: ConditionKind
    value: Any = None
    operator: str = '='


def normalize_keyword(keyword: str) -> str:
    """Réduit les suites d'espaces à un seul espace et supprime ceux des bords."""
    return ' '.join(keyword.split())


def _is_array(value) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _is_scalar(value) -> bool:
    return not _is_array(value) and not isinstance(value, dict) and not callable(value)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            pass
    raise InvalidConditionError(f"Input {value!r} must be a date")


def _as_int(value) -> int:
    if isinstance(value, bool):
        raise InvalidConditionError(f"Input {value!r} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConditionError(f"Input {value!r} must be an integer")


def parse_condition(field, keyword, value, extra_operator: Optional[str] = None) -> Condition:
    """Parse un filtre explicite (field, keyword, value[, operator]).

    Le premier token du mot-clé donne le type de condition, le second un
    opérateur pour les conditions de date ("DATE >", "DAY <=").

    Raises:
        InvalidConditionError: Si la valeur n'a pas la forme attendue
    """
    if not isinstance(keyword, str) or not keyword.strip():
        raise InvalidConditionError(f"Invalid condition keyword {keyword!r} for field {field!r}")

    normalized = normalize_keyword(keyword)
    name, _, token_operator = normalized.partition(' ')
    kind = KEYWORDS.get(name.upper())

    if kind is None:
        compare = normalized.lower()
        if compare not in COMPARISON_OPERATORS:
            raise InvalidConditionError(f"Unsupported condition {keyword!r} for field {field!r}")
        if not _is_scalar(value):
            raise InvalidConditionError(f"Input {value!r} must be a scalar")
        return Condition(field, ConditionKind.COMPARE, value, compare)

    if kind in ARRAY_KINDS:
        if not _is_array(value):
            raise InvalidConditionError(f"Input {value!r} must be an array")
        return Condition(field, kind, list(value))

    if kind in RANGE_KINDS:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise InvalidConditionError(f"Input {value!r} must be an array of two values")
        if kind in (ConditionKind.BETWEENCOLUMNS, ConditionKind.NOTBETWEENCOLUMNS):
            if not all(isinstance(column, str) for column in value):
                raise InvalidConditionError(f"Input {value!r} must be two column names")
        return Condition(field, kind, tuple(value))

    if kind is ConditionKind.DATE or kind in DATE_PART_KINDS:
        op = token_operator or extra_operator or '='
        if op not in DATE_OPERATORS:
            raise InvalidConditionError(f"Unsupported operator {op!r} for {kind.value} condition")
        if not _is_scalar(value):
            raise InvalidConditionError(f"Input {value!r} must be a scalar")
        value = _as_date(value) if kind is ConditionKind.DATE else _as_int(value)
        return Condition(field, kind, value, op)

    if kind in CALLBACK_KINDS:
        if not callable(value):
            raise InvalidConditionError(f"Input {value!r} must be a callable")
        return Condition(field, kind, value)

    # RAW
    if not isinstance(value, str):
        raise InvalidConditionError(f"Input {value!r} must be a SQL fragment")
    return Condition(field, kind, value)


def _equality(field, value) -> Condition:
    if not _is_scalar(value):
        raise InvalidConditionError(f"Input {value!r} for field {field!r} must be a scalar")
    return Condition(field, ConditionKind.EQUALS, value)


def _parse_item(item) -> Condition:
    if isinstance(item, Condition):
        return item
    if not isinstance(item, (list, tuple)) or len(item) not in (2, 3, 4):
        raise InvalidConditionError(f"Invalid filter {item!r}")
    if len(item) == 2:
        return _equality(*item)
    return parse_condition(*item)


def parse_conditions(where) -> List[Condition]:
    """Parse une spécification de filtres complète.

    Args:
        where: Mapping {field: value} (une liste ou un tuple comme valeur est
            un filtre explicite) ou séquence de tuples / Condition

    Returns:
        Liste de Condition dans l'ordre de la spécification

    Raises:
        InvalidConditionError: Au premier filtre invalide, aucun n'est appliqué
    """
    if where is None:
        return []
    if isinstance(where, Mapping):
        conditions = []
        for field, value in where.items():
            if isinstance(value, (list, tuple)):
                conditions.append(_parse_item(value))
            else:
                conditions.append(_equality(field, value))
        return conditions
    if isinstance(where, (str, bytes)) or not isinstance(where, Iterable):
        raise InvalidConditionError(f"Invalid filter specification {where!r}")
    return [_parse_item(item) for item in where]


def resolve_column(model, name: str):
    """Retourne l'attribut colonne `name` du modèle."""
    attribute = getattr(model, name, None) if isinstance(name, str) else None
    prop = getattr(attribute, 'property', None)
    if prop is None or isinstance(prop, RelationshipProperty):
        raise InvalidConditionError(f"Unknown column {name!r} on {model.__name__}")
    return attribute


def resolve_relationship(model, name: str):
    """Retourne (attribut, RelationshipProperty) de la relation `name`."""
    attribute = getattr(model, name, None) if isinstance(name, str) else None
    prop = getattr(attribute, 'property', None)
    if not isinstance(prop, RelationshipProperty):
        raise InvalidConditionError(f"Unknown relation {name!r} on {model.__name__}")
    return attribute, prop


def relation_exists(model, relation: str, callback: Optional[Callable] = None,
                    polymorphic: bool = False):
    """Construit une clause EXISTS sur une relation.

    Args:
        model: Modèle propriétaire de la relation
        relation: Nom de la relation
        callback: Reçoit le modèle lié, retourne un critère (ou None)
        polymorphic: Cible toutes les sous-classes du modèle lié

    Returns:
        Clause `rel.any(...)` (collection) ou `rel.has(...)` (scalaire)
    """
    attribute, prop = resolve_relationship(model, relation)

    target = prop.mapper.class_
    if polymorphic:
        target = with_polymorphic(target, '*')
        attribute = attribute.of_type(target)

    criterion = callback(target) if callback is not None else None
    method = attribute.any if prop.uselist else attribute.has
    if criterion is None:
        return method()
    return method(criterion)


def _subquery_exists(model, callback):
    subquery = callback(model)
    if isinstance(subquery, Select):
        return subquery.exists()
    return subquery


def build_clause(model, condition: Condition):
    """Traduit une Condition en expression SQL."""
    kind = condition.kind
    value = condition.value

    if kind is ConditionKind.EXISTS:
        return _subquery_exists(model, value)
    if kind is ConditionKind.RAW:
        return text(value)
    if kind in (ConditionKind.HAS, ConditionKind.HASMORPH):
        return relation_exists(model, condition.field, value,
                               polymorphic=kind is ConditionKind.HASMORPH)
    if kind in (ConditionKind.DOESNTHAVE, ConditionKind.DOESNTHAVEMORPH):
        return not_(relation_exists(model, condition.field, value,
                                    polymorphic=kind is ConditionKind.DOESNTHAVEMORPH))

    column = resolve_column(model, condition.field)

    if kind is ConditionKind.EQUALS:
        return column == value
    if kind is ConditionKind.COMPARE:
        return COMPARISON_OPERATORS[condition.operator](column, value)
    if kind is ConditionKind.IN:
        return column.in_(value)
    if kind is ConditionKind.NOTIN:
        return column.not_in(value)
    if kind is ConditionKind.DATE:
        return DATE_OPERATORS[condition.operator](func.date(column, type_=Date), value)
    if kind in DATE_PART_KINDS:
        part = extract(kind.value.lower(), column)
        return DATE_OPERATORS[condition.operator](part, value)
    if kind is ConditionKind.BETWEEN:
        return column.between(*value)
    if kind is ConditionKind.NOTBETWEEN:
        return not_(column.between(*value))

    lower, upper = (resolve_column(model, name) for name in value)
    if kind is ConditionKind.BETWEENCOLUMNS:
        return column.between(lower, upper)
    return not_(column.between(lower, upper))


def apply_conditions(statement: Select, model, where) -> Select:
    """Ajoute les filtres `where` au Select, en AND.

    Le Select d'origine n'est jamais modifié : en cas d'erreur l'appelant
    garde son état intact.
    """
    conditions = where if _is_parsed(where) else parse_conditions(where)
    clauses = [build_clause(model, condition) for condition in conditions]
    if not clauses:
        return statement
    return statement.where(*clauses)


def _is_parsed(where) -> bool:
    return isinstance(where, list) and all(isinstance(item, Condition) for item in where)
