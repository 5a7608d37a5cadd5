"""Spark data layer package.

Single source of truth for the package version and the local store key
namespace so that code, tests, and scripts import the same literals.
"""

PACKAGE_VERSION = "0.4.0"  # Keep in sync with pyproject version.
KEYSPACE_PREFIX = "spark_db_"

__all__ = ["PACKAGE_VERSION", "KEYSPACE_PREFIX"]
