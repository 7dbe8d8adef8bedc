"""User Repository - Gestion de la persistence des utilisateurs.

Responsabilité (SRP) : Accès aux données des utilisateurs uniquement.
Les utilisateurs sont soft-deletable (voir SoftDeleteMixin).
"""
from typing import Optional

from models import User
from repositories.base_repository import BaseRepository


class UserRepository(BaseRepository):
    """Repository pour la gestion de la persistence des utilisateurs.

    Pattern: Repository Pattern
    SOLID: SRP (une seule responsabilité - accès données utilisateurs)
    """

    model = User

    def find_by_username(self, username: str) -> Optional[User]:
        """Trouve un utilisateur par son nom d'utilisateur."""
        users = self.take(1).find_by_field('username', username)
        return users[0] if users else None

    def find_by_email(self, email: str) -> Optional[User]:
        """Trouve un utilisateur par son email."""
        users = self.take(1).find_by_field('email', email)
        return users[0] if users else None

    def create_with_password(self, username: str, email: str, password: str):
        """Crée un utilisateur avec un mot de passe hashé (bcrypt).

        Returns:
            L'utilisateur créé, ou False si la transaction a échoué
        """
        user = User(username=username, email=email)
        user.set_password(password)
        return self.create({
            'username': user.username,
            'email': user.email,
            'password_hash': user.password_hash,
        })
