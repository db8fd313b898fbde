"""
Service Map caching proxy service.
"""
