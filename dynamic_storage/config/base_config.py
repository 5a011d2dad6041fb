"""
Configuration settings for dynamic storage sizing.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Logging Configuration
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Operator Configuration
WATCH_NAMESPACE = os.getenv('WATCH_NAMESPACE', 'default')
CLUSTER_GROUP = os.getenv('CLUSTER_GROUP', 'postgresql.cnpg.io')
CLUSTER_VERSION = os.getenv('CLUSTER_VERSION', 'v1')
CLUSTER_PLURAL = os.getenv('CLUSTER_PLURAL', 'clusters')

# Instance Status Configuration
INSTANCE_STATUS_HOST = os.getenv('INSTANCE_STATUS_HOST', '0.0.0.0')
INSTANCE_STATUS_PORT = int(os.getenv('INSTANCE_STATUS_PORT', '8000'))
INSTANCE_NAME = os.getenv('POD_NAME', os.getenv('HOSTNAME', 'localhost'))

# PostgreSQL Paths
PGDATA = os.getenv('PGDATA', '/var/lib/postgresql/data/pgdata')
PG_WAL_PATH = os.getenv('PG_WAL_PATH', '/var/lib/postgresql/wal')
TABLESPACES_PATH = os.getenv('TABLESPACES_PATH', '/var/lib/postgresql/tablespaces')
