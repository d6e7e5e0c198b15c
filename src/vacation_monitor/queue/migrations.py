"""
Database migration utilities for the PostgreSQL job queue.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['job_queue']


def create_schema(db, force: bool = False) -> None:
    """
    Create the job queue schema in the database.

    Args:
        db: QueueDatabase instance
        force: If True, drop the existing table first (DANGEROUS!)
    """
    schema_file = Path(__file__).parent / 'schema.sql'

    if not schema_file.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_file}")

    with open(schema_file, 'r') as f:
        schema_sql = f.read()

    try:
        with db.transaction():
            if force:
                logger.warning("Dropping existing job queue table...")
                db.execute_raw("DROP TABLE IF EXISTS job_queue CASCADE")

            logger.info("Creating job queue schema...")
            db.execute_raw(schema_sql)
        logger.info("Job queue schema created successfully")

    except Exception as e:
        logger.error(f"Failed to create schema: {e}")
        raise


def check_schema_exists(db) -> bool:
    """
    Check if the job queue schema exists in the database.

    Args:
        db: QueueDatabase instance

    Returns:
        True if all required tables exist
    """
    try:
        with db.transaction():
            for table in REQUIRED_TABLES:
                result = db.execute("""
                    SELECT EXISTS (
                        SELECT FROM information_schema.tables
                        WHERE table_name = %s
                    )
                """, (table,))

                if not result or not result.get('exists'):
                    logger.debug(f"Table {table} does not exist")
                    return False

        return True

    except Exception as e:
        logger.error(f"Error checking schema: {e}")
        return False


def validate_schema(db) -> bool:
    """
    Validate that the schema is correctly set up.

    Args:
        db: QueueDatabase instance

    Returns:
        True if schema is valid
    """
    if not check_schema_exists(db):
        return False

    try:
        with db.transaction():
            db.execute("SELECT COUNT(*) FROM job_queue")

        logger.info("Schema validation successful")
        return True

    except Exception as e:
        logger.error(f"Schema validation failed: {e}")
        return False
