"""
FastAPI routers
"""
