"""
Regrain Migration Module

Upgrades stored Azure Monitor dashboard queries to the current schema.
"""

from migration.engine import MIGRATION_STEPS, MigrationResult, QueryMigrationEngine, migrate_query
from migration.dashboard import DashboardMigrationReport, migrate_dashboard
from migration.defaults import DEFAULT_QUERY, apply_defaults

__all__ = [
    'MIGRATION_STEPS',
    'MigrationResult',
    'QueryMigrationEngine',
    'migrate_query',
    'DashboardMigrationReport',
    'migrate_dashboard',
    'DEFAULT_QUERY',
    'apply_defaults',
]
