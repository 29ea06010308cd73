"""
sparkctl - Spark cluster membership and correlated metrics orchestrator.
"""
__version__ = "0.1.0"
