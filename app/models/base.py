"""Shared table metadata so foreign keys resolve across model modules."""

from sqlalchemy import MetaData

metadata = MetaData()
