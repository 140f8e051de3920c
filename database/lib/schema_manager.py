"""Database schema management module.

Schema versions live in ``database/schema/vN.py`` as plain dictionaries. A
fresh database gets the latest version created directly; an existing one is
brought forward by running each newer version's ``migrations`` statements.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "schema"
SCHEMA_PACKAGE = __name__.rsplit('.', 2)[0] + '.schema'


def column_sql(col: Dict[str, Any]) -> str:
    """Render one column definition."""
    col_def = f"{col['name']} {col['type']}"
    if 'default' in col:
        col_def += f" DEFAULT {col['default']}"
    if col.get('nullable') is False or col.get('primary_key'):
        col_def += " NOT NULL"
    return col_def


def table_sql(table: Dict[str, Any]) -> str:
    """Render CREATE TABLE for a table definition, without foreign keys."""
    columns = [column_sql(col) for col in table['columns']]
    constraints = []

    for col in table['columns']:
        if col.get('primary_key'):
            constraints.append(f"PRIMARY KEY ({col['name']})")
        elif col.get('unique'):
            constraints.append(f"UNIQUE ({col['name']})")

    # Composite primary key
    if isinstance(table.get('primary_key'), list):
        constraints.append(f"PRIMARY KEY ({', '.join(table['primary_key'])})")

    for check in table.get('checks', []):
        constraints.append(f"CHECK ({check})")

    return f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(columns + constraints)})"


def index_sql(table_name: str, idx: Dict[str, Any]) -> str:
    """Render CREATE INDEX, partial when the definition has a ``where``."""
    unique = 'UNIQUE ' if idx.get('unique') else ''
    sql = (
        f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
        f"ON {table_name} ({', '.join(idx['columns'])})"
    )
    if idx.get('where'):
        sql += f" WHERE {idx['where']}"
    return sql


def foreign_key_sql(table_name: str, fk: Dict[str, Any]) -> str:
    return (
        f"ALTER TABLE {table_name} "
        f"ADD CONSTRAINT fk_{table_name}_{fk['columns'][0]} "
        f"FOREIGN KEY ({', '.join(fk['columns'])}) "
        f"REFERENCES {fk['references']}"
    )


class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Optional[str] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files,
                defaults to the schema package next to this module
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self.current_version = 0
        self._schema_files: Dict[int, Dict[str, Any]] = {}

    async def initialize(self) -> None:
        """Create the version table and apply pending schema versions.

        Raises:
            DatabaseSchemaError: If no schema files exist or a migration fails
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMP NOT NULL DEFAULT now()
                    )
                ''')
                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self._load_schema_files()
            if not schema_files:
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    def _load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions, sorted by version
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"{SCHEMA_PACKAGE}.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        self._schema_files = dict(sorted(schema_files.items()))
        return self._schema_files

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(
            f"Updating schema from version {self.current_version} to {latest_version}"
        )

        try:
            async with self.pool.acquire() as conn:
                if self.current_version == 0:
                    await self._create_fresh_schema(conn, schema_files[latest_version])
                    return

                for version in range(self.current_version + 1, latest_version + 1):
                    if version not in schema_files:
                        continue
                    async with conn.transaction():
                        for statement in schema_files[version].get('migrations', []):
                            await conn.execute(statement)
                        await conn.execute(
                            'INSERT INTO schema_version (version) VALUES ($1)',
                            version
                        )
                    logger.info(f"Successfully migrated to version {version}")

        except Exception as e:
            logger.error(f"Schema migration failed: {e}")
            raise DatabaseSchemaError(f"Failed to apply schema migrations: {e}")

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        """Create every table of the given schema version.

        Tables are created first, then foreign keys and indexes, so that
        definition order inside the schema file does not matter.
        """
        await self._drop_tables(conn, [t['name'] for t in schema.get('tables', [])])

        async with conn.transaction():
            for table in schema.get('tables', []):
                await conn.execute(table_sql(table))
                logger.info(f"Created table {table['name']}")

            for table in schema.get('tables', []):
                for statement in self._constraint_statements(table):
                    await conn.execute(statement)

            await conn.execute(
                'INSERT INTO schema_version (version) VALUES ($1)',
                schema['version']
            )
        logger.info(f"Successfully created fresh schema version {schema['version']}")

    @staticmethod
    def _constraint_statements(table: Dict[str, Any]) -> List[str]:
        statements = [
            foreign_key_sql(table['name'], fk) for fk in table.get('foreign_keys', [])
        ]
        statements.extend(
            index_sql(table['name'], idx) for idx in table.get('indexes', [])
        )
        return statements

    async def _drop_tables(self, conn, names: List[str]) -> None:
        """Drop leftovers of a previous, unversioned install."""
        for name in reversed(names):
            await conn.execute(f'DROP TABLE IF EXISTS {name} CASCADE')
