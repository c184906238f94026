"""
Renewal execution, retry policy and scheduling.
"""
