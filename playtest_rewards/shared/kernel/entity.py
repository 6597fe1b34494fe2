"""Declarative base shared by every persistence model."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
