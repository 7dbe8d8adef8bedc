"""Flask application factory for the repository layer.

Architecture:
- Repository Layer (repositories/): Accès données (CRUD, filtres, pagination)
- Domain Layer (models): Entités SQLAlchemy et mixins (soft delete, sérialisation)

Routing and controllers live in the host application; this module only wires
configuration, logging and the SQLAlchemy extension.
"""
from flask import Flask
import os
import logging
import click

from models import db
from repositories.base_repository import DEFAULT_PAGINATION_LIMIT


def create_app(test_config=None):
    """Create and configure the Flask application.

    Args:
        test_config: Optional mapping overriding the environment-based config

    Returns:
        Configured Flask app with db initialised
    """
    # Configure basic logging so INFO logs appear in the Flask console by default
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    app = Flask(__name__)
    app.logger.setLevel(logging.INFO)

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///repository.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['REPOSITORY_PAGINATION_LIMIT'] = int(
        os.environ.get('REPOSITORY_PAGINATION_LIMIT', DEFAULT_PAGINATION_LIMIT)
    )

    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables."""
        db.create_all()
        click.echo('Initialized the database.')

    return app
