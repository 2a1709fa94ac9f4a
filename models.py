from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime

db = SQLAlchemy()

RECURRENCE_TYPES = ('none', 'daily', 'weekly', 'monthly', 'yearly', 'weekdays')
EXCEPTION_TYPES = ('modified', 'cancelled', 'moved')


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    password_hash = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    series = db.relationship('Series', backref='owner', lazy=True, cascade="all, delete-orphan")
    tags = db.relationship('Tag', backref='owner', lazy=True, cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)


class Tag(db.Model):
    """User-owned label that can be linked to any number of series."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    name = db.Column(db.String(80), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('owner_id', 'name', name='uq_tag_owner_name'),)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
        }


class SeriesTag(db.Model):
    """Link row between a series and a tag. Split copies rows, never shares them."""
    __tablename__ = 'series_tag'
    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(db.Integer, db.ForeignKey('series.id', ondelete='CASCADE'), nullable=False)
    tag_id = db.Column(db.Integer, db.ForeignKey('tag.id', ondelete='CASCADE'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tag = db.relationship('Tag', backref=db.backref('series_links', cascade="all, delete-orphan"))

    __table_args__ = (db.UniqueConstraint('series_id', 'tag_id', name='uq_series_tag'),)


class Series(db.Model):
    """
    Recurring template. anchor_start carries the anchor date (first possible
    occurrence) plus the time of day; anchor_end fixes the duration.
    All datetimes are naive and interpreted in the owner's calendar.
    """
    __tablename__ = 'series'
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    anchor_start = db.Column(db.DateTime, nullable=False)
    anchor_end = db.Column(db.DateTime, nullable=True)
    recurrence_type = db.Column(db.String(20), nullable=False, default='none')  # see RECURRENCE_TYPES
    recurrence_rule = db.Column(db.String(500), nullable=True)  # RRULE text
    recurrence_end_date = db.Column(db.Date, nullable=True)
    reminder_minutes = db.Column(db.Integer, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tag_links = db.relationship(
        'SeriesTag',
        backref='series',
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SeriesTag.id"
    )
    exceptions = db.relationship(
        'SeriesException',
        backref='series',
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SeriesException.instance_date"
    )

    __mapper_args__ = {'version_id_col': version}

    @property
    def anchor_date(self):
        return self.anchor_start.date() if self.anchor_start else None

    @property
    def is_recurring(self):
        return (self.recurrence_type or 'none') != 'none'

    def tag_ids(self):
        return [link.tag_id for link in self.tag_links]

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'title': self.title,
            'description': self.description,
            'anchor_start': self.anchor_start.isoformat() if self.anchor_start else None,
            'anchor_end': self.anchor_end.isoformat() if self.anchor_end else None,
            'recurrence': {
                'type': self.recurrence_type,
                'rule': self.recurrence_rule,
                'end_date': self.recurrence_end_date.isoformat() if self.recurrence_end_date else None,
            },
            'tags': [link.tag.to_dict() for link in self.tag_links if link.tag],
            'reminder_minutes': self.reminder_minutes,
            'version': self.version,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class SeriesException(db.Model):
    """Per-date override of one occurrence. Null override fields inherit from the series."""
    __tablename__ = 'series_exception'
    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(db.Integer, db.ForeignKey('series.id', ondelete='CASCADE'), nullable=False)
    instance_date = db.Column(db.Date, nullable=False)
    exception_type = db.Column(db.String(20), nullable=False)  # modified | cancelled | moved
    title = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    instance_start = db.Column(db.DateTime, nullable=True)
    instance_end = db.Column(db.DateTime, nullable=True)
    original_date = db.Column(db.Date, nullable=True)  # moved only
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('series_id', 'instance_date', name='uq_series_exception_date'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'series_id': self.series_id,
            'instance_date': self.instance_date.isoformat() if self.instance_date else None,
            'exception_type': self.exception_type,
            'title': self.title,
            'description': self.description,
            'instance_start': self.instance_start.isoformat() if self.instance_start else None,
            'instance_end': self.instance_end.isoformat() if self.instance_end else None,
            'original_date': self.original_date.isoformat() if self.original_date else None,
        }
