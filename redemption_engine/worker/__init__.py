"""
Worker package - Celery background tasks
"""
