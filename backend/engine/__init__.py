"""
Mail Sweep engine: Gmail sync, unsubscribe automation and background jobs.
"""
