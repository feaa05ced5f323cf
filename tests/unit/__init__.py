"""
Unit tests for the cart aggregate, coupon rules, rating aggregation and the
cart service's optimistic write path.
"""
