"""
Shared trading core: domain models and the interfaces the gateway services
depend on (settlement sources, persistence, notification and alert sinks).
"""
