"""
Herald - cron-driven notification scheduler with a durable retry queue.
"""
__version__ = "0.1.0"
