"""Base Repository - Accès générique aux données d'une entité.

Responsabilité (SRP) : exposer des verbes CRUD uniformes pour n'importe quel
modèle SQLAlchemy, sans logique métier.
- Lecture (find, all, find_where, count, pluck, paginate)
- Écriture transactionnelle (create, update, delete, restore, insert, delete_where)
- Soft delete (Trashed.NONE / Trashed.WITH / Trashed.ONLY)
- Relations (sync, with_relations, with_count, where_has)

Chaque opération publique repart d'un Select vierge : le scope en attente et
les options de chaînage (order_by, with_relations, take...) sont consommés
par l'opération suivante puis réinitialisés, même en cas d'erreur.
"""
import logging
from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from flask import current_app, has_app_context, has_request_context, request
from sqlalchemy import delete as sql_delete
from sqlalchemy import func, inspect, select
from sqlalchemy import insert as sql_insert
from sqlalchemy import update as sql_update
from sqlalchemy.orm import Mapper, load_only, selectinload

from models import db, SerializerMixin, SoftDeleteMixin
from repositories.conditions import (
    apply_conditions, build_clause, parse_conditions, relation_exists,
    resolve_column, resolve_relationship,
)
from repositories.exceptions import InvalidConditionError, ModelNotFoundError, RepositoryError
from repositories.pagination import Paginator

logger = logging.getLogger(__name__)

DEFAULT_PAGINATION_LIMIT = 15


class Trashed(str, Enum):
    """Visibilité des lignes soft-deleted."""
    NONE = ''
    WITH = 'withtrashed'
    ONLY = 'onlytrashed'

    @classmethod
    def parse(cls, value) -> 'Trashed':
        """Accepte un Trashed ou une chaîne ('withTrashed', 'only_trashed'...)."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        key = str(value).strip().replace('_', '').lower()
        if key == 'none':
            return cls.NONE
        for mode in cls:
            if mode.value == key:
                return mode
        raise ValueError(f"Unknown trashed mode {value!r}")


class BaseRepository:
    """Repository générique pour un modèle SQLAlchemy.

    Pattern: Repository Pattern
    SOLID: SRP (accès données uniquement), OCP (spécialisation par héritage)

    Usage:
        class UserRepository(BaseRepository):
            model = User

        repo = UserRepository()
        repo.order_by('username').find_where([('age', '>=', 18)])

        # ou sans sous-classe
        BaseRepository(Post).count()
    """

    model = None

    def __init__(self, model=None):
        if model is not None:
            self.model = model
        self._scope: Optional[Callable] = None
        self.make_model()

    # ------------------------------------------------------------------
    # État du builder
    # ------------------------------------------------------------------

    def make_model(self):
        """Reconstruit un Select vierge sur le modèle.

        Raises:
            RepositoryError: Si `model` n'est pas une classe SQLAlchemy mappée
        """
        mapper = inspect(self.model, raiseerr=False) if self.model is not None else None
        if not isinstance(mapper, Mapper):
            raise RepositoryError(f"Class {self.model!r} must be a mapped SQLAlchemy model")

        self.query = select(self.model)
        self._counts: List[str] = []
        self._hidden: Optional[List[str]] = None
        self._visible: Optional[List[str]] = None
        return self.query

    def reset_model(self):
        return self.make_model()

    def scope_query(self, scope: Callable) -> 'BaseRepository':
        """Enregistre un scope appliqué (puis oublié) par la prochaine opération.

        Args:
            scope: Fonction Select -> Select
        """
        self._scope = scope
        return self

    def reset_scope(self) -> 'BaseRepository':
        self._scope = None
        return self

    def apply_scope(self) -> 'BaseRepository':
        if self._scope is not None and callable(self._scope):
            self.query = self._scope(self.query)
        return self

    @contextmanager
    def _operation(self):
        try:
            self.apply_scope()
            yield
        finally:
            self.reset_model()
            self.reset_scope()

    @contextmanager
    def _guard(self):
        """Réinitialise le builder et le scope si une erreur d'usage survient
        avant que l'opération ne démarre."""
        try:
            yield
        except Exception:
            self.reset_model()
            self.reset_scope()
            raise

    def _transaction(self, action: str, callback: Callable):
        """Exécute `callback` dans une transaction.

        Returns:
            Résultat du callback, ou False après rollback si une exception survient
        """
        try:
            with self._operation():
                result = callback()
                db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            logger.exception('%s.%s failed, transaction rolled back', self.model.__name__, action)
            return False

    def _commit(self):
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Helpers de requête
    # ------------------------------------------------------------------

    def _primary_key(self):
        return inspect(self.model).primary_key[0]

    def _soft_deletes(self) -> bool:
        return issubclass(self.model, SoftDeleteMixin)

    def _apply_trashed(self, statement, trashed):
        mode = Trashed.parse(trashed)
        if not self._soft_deletes():
            if mode is Trashed.ONLY:
                raise RepositoryError(f"{self.model.__name__} does not support soft deletes")
            return statement
        if mode is Trashed.NONE:
            return statement.where(self.model.deleted_at.is_(None))
        if mode is Trashed.ONLY:
            return statement.where(self.model.deleted_at.isnot(None))
        return statement

    def _apply_columns(self, statement, columns):
        if columns is None or columns == '*':
            return statement
        if isinstance(columns, str):
            columns = [columns]
        columns = [column for column in columns if column != '*']
        if not columns:
            return statement
        return statement.options(load_only(*(resolve_column(self.model, name) for name in columns)))

    def _statement(self, columns=None, trashed=Trashed.NONE):
        return self._apply_trashed(self._apply_columns(self.query, columns), trashed)

    def _hydrate(self, result) -> list:
        """Transforme un Result en entités (colonnes with_count et projection incluses)."""
        rows = list(result) if self._counts else [(entity,) for entity in result.scalars()]

        entities = []
        for row in rows:
            entity = row[0]
            if isinstance(entity, SerializerMixin):
                # l'identity map renvoie les mêmes instances d'un appel à l'autre
                entity.reset_projection()
                for name, value in zip(self._counts, row[1:]):
                    entity.add_attribute(name, value)
                if self._hidden is not None:
                    entity.set_hidden(self._hidden)
                if self._visible is not None:
                    entity.set_visible(self._visible)
            else:
                for name, value in zip(self._counts, row[1:]):
                    setattr(entity, name, value)
            entities.append(entity)
        return entities

    def _fetch(self, statement) -> list:
        return self._hydrate(db.session.execute(statement))

    def _count(self, statement, columns='*') -> int:
        subquery = statement.order_by(None).subquery()
        if columns is None or columns == '*':
            expression = func.count()
        else:
            resolve_column(self.model, columns)
            expression = func.count(subquery.c[columns])
        return db.session.execute(select(expression).select_from(subquery)).scalar() or 0

    def _relation_count(self, relation: str):
        _, prop = resolve_relationship(self.model, relation)
        statement = select(func.count()).select_from(prop.target)
        if prop.secondary is not None:
            statement = statement.select_from(prop.secondary).where(prop.secondaryjoin)
        statement = statement.where(prop.primaryjoin)
        if issubclass(prop.mapper.class_, SoftDeleteMixin):
            statement = statement.where(prop.target.c.deleted_at.is_(None))
        return statement.correlate(self.model.__table__).scalar_subquery().label(f'{relation}_count')

    def _default_limit(self) -> int:
        if has_app_context():
            return int(current_app.config.get('REPOSITORY_PAGINATION_LIMIT', DEFAULT_PAGINATION_LIMIT))
        return DEFAULT_PAGINATION_LIMIT

    # ------------------------------------------------------------------
    # Chaînage
    # ------------------------------------------------------------------

    def order_by(self, column: str, direction: str = 'asc') -> 'BaseRepository':
        with self._guard():
            attribute = resolve_column(self.model, column)
            direction = direction.strip().lower()
            if direction not in ('asc', 'desc'):
                raise InvalidConditionError(f"Invalid order direction {direction!r}")
        self.query = self.query.order_by(attribute.desc() if direction == 'desc' else attribute.asc())
        return self

    def with_relations(self, *relations) -> 'BaseRepository':
        """Eager loading des relations (chemins pointés acceptés: 'posts.users')."""
        with self._guard():
            for relation in _flatten(relations):
                option = None
                model = self.model
                for name in relation.split('.'):
                    attribute, prop = resolve_relationship(model, name)
                    option = selectinload(attribute) if option is None else option.selectinload(attribute)
                    model = prop.mapper.class_
                self.query = self.query.options(option)
        return self

    def with_count(self, *relations) -> 'BaseRepository':
        """Ajoute un attribut `<relation>_count` aux entités retournées."""
        with self._guard():
            for relation in _flatten(relations):
                self.query = self.query.add_columns(self._relation_count(relation))
                self._counts.append(f'{relation}_count')
        return self

    def where_has(self, relation: str, callback: Optional[Callable] = None) -> 'BaseRepository':
        with self._guard():
            self.query = self.query.where(relation_exists(self.model, relation, callback))
        return self

    def hidden(self, fields) -> 'BaseRepository':
        self._hidden = list(fields)
        return self

    def visible(self, fields) -> 'BaseRepository':
        self._visible = list(fields)
        return self

    def take(self, limit: int) -> 'BaseRepository':
        self.query = self.query.limit(limit)
        return self

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def all(self, columns=None, trashed=Trashed.NONE) -> list:
        """Récupère toutes les entités (scope et chaînage appliqués)."""
        with self._operation():
            return self._fetch(self._statement(columns, trashed))

    def all_with_trashed(self, columns=None) -> list:
        return self.all(columns, Trashed.WITH)

    def all_trashed(self, columns=None) -> list:
        return self.all(columns, Trashed.ONLY)

    def limit(self, limit: int, columns=None) -> list:
        self.take(limit)
        return self.all(columns)

    def find(self, id, columns=None, trashed=Trashed.NONE):
        """Trouve une entité par sa clé primaire.

        Args:
            id: Valeur de la clé primaire
            columns: Colonnes à charger (toutes par défaut)
            trashed: Visibilité des lignes soft-deleted

        Returns:
            L'entité, ou False si introuvable (ou en cas d'erreur)
        """
        try:
            with self._operation():
                statement = self._statement(columns, trashed).where(self._primary_key() == id)
                entities = self._fetch(statement)
                if not entities:
                    raise ModelNotFoundError(self.model, id)
                return entities[0]
        except Exception as e:
            logger.debug('%s.find(%r) returned no entity: %s', self.model.__name__, id, e)
            return False

    def find_with_trashed(self, id, columns=None):
        return self.find(id, columns, Trashed.WITH)

    def find_only_trashed(self, id, columns=None):
        return self.find(id, columns, Trashed.ONLY)

    def find_by_field(self, field: str, value, columns=None) -> list:
        return self.find_where([(field, value)], columns)

    def find_where(self, where, columns=None) -> list:
        """Trouve les entités correspondant à tous les filtres `where`.

        Raises:
            InvalidConditionError: Si un filtre est mal formé
        """
        with self._operation():
            return self._fetch(apply_conditions(self._statement(columns), self.model, where))

    def find_where_in(self, field: str, values, columns=None) -> list:
        return self.find_where([(field, 'IN', values)], columns)

    def find_where_not_in(self, field: str, values, columns=None) -> list:
        return self.find_where([(field, 'NOTIN', values)], columns)

    def find_where_between(self, field: str, values, columns=None) -> list:
        return self.find_where([(field, 'BETWEEN', values)], columns)

    def first_or_new(self, attributes: Optional[Dict[str, Any]] = None):
        """Première entité correspondant à `attributes`, ou nouvelle instance non sauvegardée."""
        attributes = attributes or {}
        with self._operation():
            entities = self._fetch(apply_conditions(self._statement(), self.model, attributes).limit(1))
        if entities:
            return entities[0]
        return self.model(**attributes)

    def first_or_create(self, attributes: Optional[Dict[str, Any]] = None):
        entity = self.first_or_new(attributes)
        if inspect(entity).transient:
            db.session.add(entity)
            self._commit()
        return entity

    def update_or_create(self, attributes: Dict[str, Any], values: Optional[Dict[str, Any]] = None):
        """Met à jour l'entité correspondant à `attributes` avec `values`, ou la crée."""
        values = values or {}
        entity = self.first_or_new(attributes)
        for key, value in values.items():
            resolve_column(self.model, key)
            setattr(entity, key, value)
        if inspect(entity).transient:
            db.session.add(entity)
        self._commit()
        return entity

    def pluck(self, column: str, key: Optional[str] = None) -> Union[list, dict]:
        """Valeurs d'une colonne, ou dict {key: value} si `key` est donné."""
        with self._operation():
            statement = self._statement()
            value_column = resolve_column(self.model, column)
            if key is None:
                return list(db.session.execute(statement.with_only_columns(value_column)).scalars())
            key_column = resolve_column(self.model, key)
            return dict(db.session.execute(statement.with_only_columns(key_column, value_column)).all())

    def count(self, columns: str = '*') -> int:
        with self._operation():
            return self._count(self._statement(), columns)

    def count_where(self, where, columns: str = '*') -> int:
        with self._operation():
            statement = self._statement()
            if where:
                statement = apply_conditions(statement, self.model, where)
            return self._count(statement, columns)

    def paginate(self, limit: Optional[int] = None, columns=None, page: Optional[int] = None,
                 method: str = 'paginate') -> Paginator:
        """Page de résultats.

        Args:
            limit: Taille de page (REPOSITORY_PAGINATION_LIMIT par défaut)
            columns: Colonnes à charger
            page: Numéro de page (paramètre `page` de la requête par défaut)
            method: 'paginate' (avec total) ou 'simple_paginate' (sans COUNT)

        Returns:
            Paginator dont les liens conservent la query string de la requête courante
        """
        with self._operation():
            method = method.strip().replace('_', '').lower()
            if method not in ('paginate', 'simplepaginate'):
                raise ValueError(f"Unknown pagination method {method!r}")
            if limit is None:
                limit = self._default_limit()
            results = Paginator(
                select=self._statement(columns),
                session=db.session,
                page=page,
                per_page=limit,
                max_per_page=None,
                error_out=False,
                simple=method == 'simplepaginate',
                hydrate=self._hydrate,
            )
            if has_request_context():
                results.appends(request.args)
            return results

    def simple_paginate(self, limit: Optional[int] = None, columns=None,
                        page: Optional[int] = None) -> Paginator:
        return self.paginate(limit, columns, page, method='simple_paginate')

    # ------------------------------------------------------------------
    # Écriture (transactionnelle)
    # ------------------------------------------------------------------

    def create(self, attributes: Dict[str, Any]):
        """Crée une entité.

        Returns:
            L'entité créée, ou False si la transaction a échoué
        """
        def _create():
            entity = self.model(**attributes)
            db.session.add(entity)
            db.session.flush()
            return entity

        return self._transaction('create', _create)

    def update(self, attributes: Dict[str, Any], id):
        """Met à jour une entité (instance ou clé primaire).

        Returns:
            L'entité mise à jour, ou False si introuvable ou en cas d'échec
        """
        entity = id if isinstance(id, self.model) else self.find(id)
        if entity is False:
            return False

        def _update():
            for key, value in attributes.items():
                resolve_column(self.model, key)
                setattr(entity, key, value)
            db.session.flush()
            return entity

        return self._transaction('update', _update)

    def delete(self, id, method: str = 'delete') -> bool:
        """Supprime une entité (instance ou clé primaire).

        Args:
            id: Entité ou clé primaire
            method: 'delete' (soft delete si le modèle le supporte) ou 'force_delete'

        Returns:
            True si supprimée, False si introuvable ou en cas d'échec
        """
        with self._guard():
            normalized = method.strip().replace('_', '').lower()
            if normalized not in ('delete', 'forcedelete'):
                raise ValueError(f"Unknown delete method {method!r}")
        force = normalized == 'forcedelete'

        if isinstance(id, self.model):
            entity = id
        elif force:
            entity = self.find_with_trashed(id)
        else:
            entity = self.find(id)
        if entity is False:
            return False

        def _delete():
            if not force and self._soft_deletes() and entity.trashed:
                return False
            if force or not self._soft_deletes():
                db.session.delete(entity)
            else:
                entity.soft_delete()
            db.session.flush()
            return True

        return self._transaction(normalized, _delete)

    def force_delete(self, id) -> bool:
        return self.delete(id, 'force_delete')

    def restore(self, id) -> bool:
        """Restaure une entité soft-deleted."""
        entity = id if isinstance(id, self.model) else self.find_with_trashed(id)
        if entity is False:
            return False

        def _restore():
            entity.restore()
            db.session.flush()
            return True

        return self._transaction('restore', _restore)

    def insert(self, values) -> bool:
        """Insertion en masse d'un ou plusieurs enregistrements (dicts)."""
        def _insert():
            rows = [values] if isinstance(values, Mapping) else list(values)
            if rows:
                db.session.execute(sql_insert(self.model), rows)
            return True

        return self._transaction('insert', _insert)

    def delete_where(self, where) -> bool:
        """Suppression en masse (soft delete si supporté) des entités filtrées.

        Raises:
            InvalidConditionError: Filtre mal formé, avant toute transaction
        """
        with self._guard():
            clauses = [build_clause(self.model, condition) for condition in parse_conditions(where)]

        def _delete_where():
            criteria = self._statement().where(*clauses).whereclause
            if self._soft_deletes():
                statement = sql_update(self.model).values(deleted_at=datetime.utcnow())
            else:
                statement = sql_delete(self.model)
            if criteria is not None:
                statement = statement.where(criteria)
            db.session.execute(statement, execution_options={'synchronize_session': 'fetch'})
            return True

        return self._transaction('delete_where', _delete_where)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def sync(self, id, relation: str, items, detaching: bool = True) -> Dict[str, list]:
        """Synchronise une relation many-to-many / one-to-many.

        Args:
            id: Entité ou clé primaire du propriétaire
            relation: Nom de la relation (collection)
            items: Entités liées ou clés primaires
            detaching: Si True, retire les éléments absents de `items`

        Returns:
            {'attached': [...], 'detached': [...]} (clés primaires)

        Raises:
            ModelNotFoundError: Propriétaire ou élément lié introuvable
        """
        try:
            return self._sync(id, relation, items, detaching)
        finally:
            self.reset_model()
            self.reset_scope()

    def _sync(self, id, relation, items, detaching):
        _, prop = resolve_relationship(self.model, relation)
        if not prop.uselist:
            raise InvalidConditionError(f"Relation {relation!r} is not a collection")
        target = prop.mapper.class_

        entity = id if isinstance(id, self.model) else self.find(id)
        if entity is False:
            raise ModelNotFoundError(self.model, id)

        if isinstance(items, (target, str, bytes)) or not isinstance(items, Iterable):
            items = [items]
        wanted = [self._related(target, item) for item in items]
        wanted_ids = [_identity(related) for related in wanted]

        collection = getattr(entity, relation)
        current_ids = {_identity(related) for related in collection}

        detached = []
        if detaching:
            for related in list(collection):
                identity = _identity(related)
                if identity not in wanted_ids:
                    collection.remove(related)
                    detached.append(identity)

        attached = []
        for related, identity in zip(wanted, wanted_ids):
            if identity in current_ids or identity in attached:
                continue
            collection.append(related)
            attached.append(identity)

        self._commit()
        return {'attached': attached, 'detached': detached}

    def sync_without_detaching(self, id, relation: str, items) -> Dict[str, list]:
        return self.sync(id, relation, items, detaching=False)

    @staticmethod
    def _related(target, item):
        if isinstance(item, target):
            return item
        related = db.session.get(target, item)
        if related is None:
            raise ModelNotFoundError(target, item)
        return related

    # ------------------------------------------------------------------
    # Passthrough
    # ------------------------------------------------------------------

    def raw(self, operation: str, *args, **kwargs):
        """Appelle `operation` sur le Select courant (à défaut, sur le modèle).

        Le résultat est retourné tel quel ; l'état du repository n'est pas modifié.
        """
        target = self.query if hasattr(self.query, operation) else self.model
        return getattr(target, operation)(*args, **kwargs)


def _flatten(relations) -> List[str]:
    names = []
    for relation in relations:
        if isinstance(relation, str):
            names.append(relation)
        else:
            names.extend(relation)
    return names


def _identity(entity):
    values = inspect(entity).mapper.primary_key_from_instance(entity)
    return values[0] if len(values) == 1 else tuple(values)
