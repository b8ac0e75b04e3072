"""
API routers, mounted by the application factory.
"""
