"""
MongoDB connection handling shared by the lock store and the search store.
"""

import logging
from typing import Any, Dict, Tuple

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "vacation-monitor"


def build_connection_string(conn_params: Dict[str, Any]) -> str:
    """
    Build a MongoDB connection string from connection parameters.

    An explicit ``uri`` wins over the individual host/port/credential fields.
    """
    if conn_params.get('uri'):
        return conn_params['uri']

    host = conn_params.get('host', 'localhost')
    port = conn_params.get('port', 27017)
    username = conn_params.get('username')
    password = conn_params.get('password')
    db_name = conn_params.get('db_name', DEFAULT_DB_NAME)

    connection_string = "mongodb://"
    if username and password:
        connection_string += f"{username}:{password}@"
    connection_string += f"{host}:{port}/{db_name}"

    options = conn_params.get('options', {})
    if options:
        option_str = "&".join(f"{k}={v}" for k, v in options.items())
        connection_string += f"?{option_str}"

    return connection_string


def connect(conn_params: Dict[str, Any]) -> Tuple[MongoClient, Database]:
    """
    Open a client and verify the server answers.

    Blocking; callers on the event loop run it through ``asyncio.to_thread``.

    Returns:
        Tuple of (client, database)
    """
    db_name = conn_params.get('db_name', DEFAULT_DB_NAME)
    timeout_ms = int(conn_params.get('server_selection_timeout_ms', 5000))

    try:
        client = MongoClient(
            build_connection_string(conn_params),
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms
        )
        client.admin.command('ping')
    except ConnectionFailure as e:
        logger.error(f"Error connecting to MongoDB: {str(e)}")
        raise

    logger.info(f"Connected to MongoDB database {db_name}")
    return client, client[db_name]
