"""
Command line interface for deployment, teardown and stack queries.
"""
