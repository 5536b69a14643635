"""Integrations with data-access libraries.

Import the integration module directly, e.g.
``from cachedqueries.integrations.sqlalchemy import SqlAlchemyQuery``.
"""
