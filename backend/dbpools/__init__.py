"""
dbpools: connection pools for an embedded SQLite file or a networked server.
"""

__version__ = "0.1.0"
