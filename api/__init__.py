"""
TuFund HTTP API

Routers and shared FastAPI dependencies.
"""
