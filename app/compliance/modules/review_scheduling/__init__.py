"""
Review & Distribution Scheduler: review-date buckets and acknowledgment tracking.
"""
