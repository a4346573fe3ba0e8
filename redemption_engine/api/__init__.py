"""
API package - FastAPI routers
"""
