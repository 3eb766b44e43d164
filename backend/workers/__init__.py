"""
Background polling workers
"""
