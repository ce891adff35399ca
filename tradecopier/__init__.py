"""Trade copier relay: master-to-slave trade event replication over polling."""

__version__ = "1.0.0"
