"""
HTTP API blueprints for Loyalty Core.
"""
