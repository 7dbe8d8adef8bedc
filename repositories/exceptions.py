"""Exceptions du repository layer.

Les erreurs d'usage (filtres mal formés) remontent toujours à l'appelant.
Les erreurs opérationnelles sont absorbées par BaseRepository et signalées
par un retour False.
"""


class RepositoryError(Exception):
    """Erreur de base du repository layer."""


class InvalidConditionError(RepositoryError, ValueError):
    """Spécification de filtre invalide (forme de la valeur, opérateur, champ)."""


class ModelNotFoundError(RepositoryError, LookupError):
    """Entité introuvable là où elle est obligatoire (ex: sync)."""

    def __init__(self, model, identifier):
        self.model = model
        self.identifier = identifier
        name = getattr(model, '__name__', str(model))
        super().__init__(f"{name} {identifier!r} not found")
