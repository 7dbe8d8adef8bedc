"""Repository layer - Data Access Objects (DAO) pattern.

Ce package contient les repositories qui gèrent l'accès aux données.
Responsabilité : CRUD operations, requêtes DB, persistence.
Ne contient PAS de logique métier.
"""
from repositories.base_repository import BaseRepository, Trashed
from repositories.conditions import Condition, ConditionKind
from repositories.exceptions import InvalidConditionError, ModelNotFoundError, RepositoryError
from repositories.pagination import Paginator

__all__ = [
    'BaseRepository',
    'Trashed',
    'Condition',
    'ConditionKind',
    'Paginator',
    'RepositoryError',
    'InvalidConditionError',
    'ModelNotFoundError',
]
