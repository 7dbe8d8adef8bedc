"""Database models and model mixins used by the repository layer."""
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import bcrypt

db = SQLAlchemy()


class SoftDeleteMixin:
    """Soft deletion support.

    A row is "trashed" when deleted_at is set. BaseRepository excludes trashed
    rows unless asked for them (Trashed.WITH / Trashed.ONLY).
    """
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)

    @property
    def trashed(self):
        return self.deleted_at is not None

    def soft_delete(self):
        self.deleted_at = datetime.utcnow()

    def restore(self):
        self.deleted_at = None


class SerializerMixin:
    """Dictionary serialization with hidden / visible field projection.

    Class defaults come from __hidden__ and __visible__; BaseRepository.hidden()
    and BaseRepository.visible() override them per instance.
    """
    __hidden__ = ()
    __visible__ = ()

    def set_hidden(self, fields):
        self._hidden_fields = tuple(fields)
        return self

    def set_visible(self, fields):
        self._visible_fields = tuple(fields)
        return self

    def reset_projection(self):
        """Back to the class defaults: drop per-instance hidden/visible and computed attributes."""
        for name in getattr(self, '_extra_fields', ()):
            self.__dict__.pop(name, None)
        for name in ('_extra_fields', '_hidden_fields', '_visible_fields'):
            self.__dict__.pop(name, None)
        return self

    def add_attribute(self, name, value):
        """Attach a computed attribute (e.g. posts_count) included in to_dict()."""
        setattr(self, name, value)
        extra = tuple(getattr(self, '_extra_fields', ()))
        if name not in extra:
            self._extra_fields = extra + (name,)

    def to_dict(self):
        hidden = getattr(self, '_hidden_fields', self.__hidden__)
        visible = getattr(self, '_visible_fields', self.__visible__)

        fields = [column.key for column in self.__table__.columns]
        fields += [name for name in getattr(self, '_extra_fields', ()) if name not in fields]

        result = {}
        for name in fields:
            if visible and name not in visible:
                continue
            if name in hidden:
                continue
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = value.isoformat()
            result[name] = value
        return result


post_user = db.Table(
    'post_user',
    db.Column('post_id', db.Integer, db.ForeignKey('posts.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('users.id'), primary_key=True),
)


class User(SoftDeleteMixin, SerializerMixin, db.Model):
    """Application user.

    Soft deletable: deleting a user only sets deleted_at.
    """
    __tablename__ = 'users'
    __hidden__ = ('password_hash',)

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False, default='')
    age = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    authored_posts = db.relationship('Post', backref='author', lazy=True)
    posts = db.relationship('Post', secondary=post_user, back_populates='users', lazy=True)

    def set_password(self, password):
        """Hash and set password."""
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_password(self, password):
        """Verify password against hash."""
        if not self.password_hash:
            return False
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))


class Post(SerializerMixin, db.Model):
    """Blog post, shared between users through post_user.

    Not soft deletable: delete() removes the row.
    """
    __tablename__ = 'posts'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, default='')
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    views = db.Column(db.Integer, default=0)
    min_views = db.Column(db.Integer, default=0)
    max_views = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    published_at = db.Column(db.DateTime, nullable=True)

    users = db.relationship('User', secondary=post_user, back_populates='posts', lazy=True)
