"""PostgreSQL schema versioning.

Schema versions live in ``database/schema/vN.py`` as plain dictionaries
describing tables, check constraints, foreign keys and indexes (partial
indexes via ``where``). A fresh database gets the latest version in one
transaction; an existing one runs each pending version's ``migrations``.

The ``*_ddl`` functions turn those dictionaries into SQL and touch no
connection.
"""
import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

VERSION_TABLE_DDL = '''
    CREATE TABLE IF NOT EXISTS schema_version (
        version INT8 PRIMARY KEY,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
'''

def column_ddl(column: Dict[str, Any]) -> str:
    parts = [column['name'], column['type']]
    if 'default' in column:
        parts.append(f"DEFAULT {column['default']}")
    if column.get('nullable') is False:
        parts.append('NOT NULL')
    return ' '.join(parts)

def table_ddl(table: Dict[str, Any]) -> str:
    """CREATE TABLE statement with inline keys and checks (no foreign keys)."""
    definitions = [column_ddl(column) for column in table['columns']]

    primary_key = table.get('primary_key') or [
        column['name'] for column in table['columns'] if column.get('primary_key')
    ]
    if primary_key:
        definitions.append(f"PRIMARY KEY ({', '.join(primary_key)})")
    definitions.extend(
        f"UNIQUE ({column['name']})"
        for column in table['columns']
        if column.get('unique') and not column.get('primary_key')
    )
    definitions.extend(
        f"CONSTRAINT {check['name']} CHECK ({check['expression']})"
        for check in table.get('checks', [])
    )
    return f"CREATE TABLE {table['name']} (\n    " + ',\n    '.join(definitions) + "\n)"

def index_ddl(table_name: str, index: Dict[str, Any]) -> str:
    statement = (
        f"CREATE {'UNIQUE ' if index.get('unique') else ''}INDEX {index['name']} "
        f"ON {table_name} ({', '.join(index['columns'])})"
    )
    if index.get('where'):
        statement += f" WHERE {index['where']}"
    return statement

def foreign_key_ddl(table_name: str, foreign_key: Dict[str, Any]) -> str:
    columns = foreign_key['columns']
    return (
        f"ALTER TABLE {table_name} ADD CONSTRAINT fk_{table_name}_{columns[0]} "
        f"FOREIGN KEY ({', '.join(columns)}) REFERENCES {foreign_key['references']}"
    )

def schema_ddl(schema: Dict[str, Any]) -> List[str]:
    """Every statement needed to install ``schema`` on an empty database.

    Tables come first so foreign keys may reference any of them.
    """
    tables = schema.get('tables', [])
    statements = [table_ddl(table) for table in tables]
    for table in tables:
        statements.extend(foreign_key_ddl(table['name'], fk) for fk in table.get('foreign_keys', []))
        statements.extend(index_ddl(table['name'], idx) for idx in table.get('indexes', []))
    return statements

def load_schemas(schema_dir: Path = SCHEMA_DIR) -> Dict[int, Dict[str, Any]]:
    """Import every ``vN.py`` schema file, keyed and sorted by version.

    Raises:
        DatabaseSchemaError: If a file has no ``schema`` or a mismatched version
    """
    schemas = {}
    for path in Path(schema_dir).glob('v*.py'):
        try:
            version = int(path.stem[1:])
        except ValueError:
            logger.warning(f"Ignoring schema file with invalid name: {path}")
            continue

        schema = getattr(importlib.import_module(f"database.schema.{path.stem}"), 'schema', None)
        if schema is None:
            raise DatabaseSchemaError(f"Schema file {path} has no 'schema' definition")
        if schema['version'] != version:
            raise DatabaseSchemaError(
                f"Schema version mismatch in {path}: expected v{version}, got v{schema['version']}"
            )
        schemas[version] = schema
    return dict(sorted(schemas.items()))

class SchemaManager:
    """Brings a PostgreSQL database up to the latest schema version."""

    def __init__(self, pool, schema_dir: Path = SCHEMA_DIR) -> None:
        self.pool = pool
        self.schema_dir = Path(schema_dir)
        self.current_version = 0

    async def initialize(self, force_recreate: bool = False) -> None:
        """Install or migrate the schema.

        Args:
            force_recreate: Drop every table and install the latest schema

        Raises:
            DatabaseSchemaError: If there is no schema or applying it fails
        """
        try:
            schemas = load_schemas(self.schema_dir)
            if not schemas:
                raise DatabaseSchemaError(f"No schema files found in {self.schema_dir}")

            async with self.pool.acquire() as conn:
                await conn.execute(VERSION_TABLE_DDL)
                if force_recreate:
                    logger.info("Force recreate requested, resetting schema version")
                    await conn.execute('DELETE FROM schema_version')
                self.current_version = await conn.fetchval(
                    'SELECT COALESCE(MAX(version), 0) FROM schema_version'
                )

                latest = max(schemas)
                if self.current_version >= latest:
                    logger.info(f"Schema is up to date (v{self.current_version})")
                    return

                async with conn.transaction():
                    if self.current_version == 0:
                        await self._install(conn, schemas[latest])
                    else:
                        await self._migrate(conn, schemas, latest)
                self.current_version = latest

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    async def _install(self, conn, schema: Dict[str, Any]) -> None:
        await self._drop_tables(conn)
        for statement in schema_ddl(schema):
            await conn.execute(statement)
        await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', schema['version'])
        logger.info(f"Installed schema v{schema['version']}")

    async def _migrate(self, conn, schemas: Dict[int, Dict[str, Any]], latest: int) -> None:
        for version in range(self.current_version + 1, latest + 1):
            if version not in schemas:
                continue
            for migration in schemas[version].get('migrations', []):
                await conn.execute(migration)
            await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)
            logger.info(f"Migrated schema to v{version}")

    async def _drop_tables(self, conn) -> None:
        tables = await conn.fetch('''
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
            AND table_name != 'schema_version'
        ''')
        for table in tables:
            await conn.execute(f'DROP TABLE IF EXISTS "{table["table_name"]}" CASCADE')
            logger.info(f"Dropped table {table['table_name']}")
