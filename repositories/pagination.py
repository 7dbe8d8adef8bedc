"""Pagination des résultats de repository.

Basée sur SelectPagination de Flask-SQLAlchemy, avec :
- un mode "simple" (pas de COUNT, page suivante détectée par une ligne en plus)
- des liens de pages qui conservent les paramètres de query string
"""
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from flask import has_request_context, request
from flask_sqlalchemy.pagination import SelectPagination


class Paginator(SelectPagination):
    """Page de résultats d'un repository.

    Attributes:
        simple: True si le total n'est pas calculé (simple_paginate)
        query_params: Paramètres ajoutés à chaque lien de page
        path: URL de base des liens
        page_name: Nom du paramètre de page
    """

    def __init__(self, *, simple: bool = False, hydrate: Optional[Callable] = None,
                 path: Optional[str] = None, page_name: str = 'page', **kwargs):
        # _query_items() est appelé par le constructeur parent
        self.simple = simple
        self.page_name = page_name
        self.query_params: Dict[str, Any] = {}
        self._hydrate = hydrate
        self._has_more = False
        if path is None:
            path = request.base_url if has_request_context() else '/'
        self.path = path
        super().__init__(count=not simple, **kwargs)

    def _query_items(self) -> list:
        select = self._query_args['select']
        session = self._query_args['session']
        limit = self.per_page + 1 if self.simple else self.per_page
        result = session.execute(select.limit(limit).offset(self._query_offset))
        items = self._hydrate(result) if self._hydrate else list(result.scalars())

        if self.simple:
            self._has_more = len(items) > self.per_page
            items = items[:self.per_page]
        return items

    @property
    def has_next(self) -> bool:
        if self.simple:
            return self._has_more
        return super().has_next

    def appends(self, params) -> 'Paginator':
        """Ajoute des paramètres de query string aux liens générés."""
        if hasattr(params, 'to_dict'):
            params = params.to_dict(flat=False)
        for key, value in dict(params).items():
            if key != self.page_name:
                self.query_params[key] = value
        return self

    def url(self, page: int) -> str:
        """URL de la page `page`, paramètres de query string inclus."""
        params = dict(self.query_params)
        params[self.page_name] = max(page, 1)
        return f"{self.path}?{urlencode(params, doseq=True)}"

    @property
    def next_page_url(self) -> Optional[str]:
        if not self.has_next:
            return None
        return self.url(self.page + 1)

    @property
    def previous_page_url(self) -> Optional[str]:
        if not self.has_prev:
            return None
        return self.url(self.page - 1)

    @property
    def first_page_url(self) -> str:
        return self.url(1)

    @property
    def last_page_url(self) -> Optional[str]:
        if self.simple:
            return None
        return self.url(max(self.pages, 1))

    def to_dict(self) -> Dict[str, Any]:
        """Convert page to dictionary (items serialized with to_dict when available)."""
        result = {
            'data': [item.to_dict() if hasattr(item, 'to_dict') else item for item in self.items],
            'current_page': self.page,
            'per_page': self.per_page,
            'path': self.path,
            'first_page_url': self.first_page_url,
            'next_page_url': self.next_page_url,
            'prev_page_url': self.previous_page_url,
        }
        if not self.simple:
            result['total'] = self.total
            result['last_page'] = max(self.pages, 1)
            result['last_page_url'] = self.last_page_url
        return result
