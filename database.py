from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class SecretContainer(Base):
    __tablename__ = 'secrets'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    versions = relationship(
        'SecretVersion',
        back_populates='secret',
        cascade='all, delete-orphan',
        order_by='SecretVersion.version',
    )


class SecretVersion(Base):
    __tablename__ = 'secret_versions'
    __table_args__ = (UniqueConstraint('secret_id', 'version', name='uq_secret_version'),)

    id = Column(Integer, primary_key=True)
    secret_id = Column(Integer, ForeignKey('secrets.id', ondelete='CASCADE'), nullable=False)
    version = Column(Integer, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    secret = relationship('SecretContainer', back_populates='versions')


class LocalCredential(Base):
    __tablename__ = 'local_credentials'

    platform = Column(String(50), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Publication(Base):
    __tablename__ = 'publications'
    __table_args__ = (UniqueConstraint('content_id', 'platform', name='uq_publication'),)

    id = Column(Integer, primary_key=True)
    content_id = Column(String(200), nullable=False, index=True)
    platform = Column(String(50), nullable=False)
    published = Column(Boolean, default=False)
    post_url = Column(String(500))
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def make_engine(database_url: str):
    if database_url == 'sqlite://' or (database_url.startswith('sqlite') and ':memory:' in database_url):
        # One shared connection so every session sees the same in-memory database
        return create_engine(
            database_url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    if database_url.startswith('sqlite'):
        return create_engine(database_url, connect_args={'check_same_thread': False})
    return create_engine(database_url)


def init_db(database_url: str):
    engine = make_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)
