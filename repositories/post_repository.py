"""Post Repository - Gestion de la persistence des posts.

Responsabilité (SRP) : Accès aux données des posts uniquement.
"""
from typing import List

from models import Post
from repositories.base_repository import BaseRepository


class PostRepository(BaseRepository):
    """Repository pour la gestion de la persistence des posts."""

    model = Post

    def find_by_author(self, user_id: int) -> List[Post]:
        """Posts écrits par un utilisateur, les plus récents d'abord."""
        return self.order_by('created_at', 'desc').find_by_field('user_id', user_id)

    def find_shared_with(self, user_id: int) -> List[Post]:
        """Posts partagés avec un utilisateur (relation post_user)."""
        return self.find_where([
            ('users', 'HAS', lambda User: User.id == user_id),
        ])
