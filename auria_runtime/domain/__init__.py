"""
Domain layer: entities, interfaces and the services that enforce the
runtime's rules (tier placement, licensing, routing, execution state).
"""
