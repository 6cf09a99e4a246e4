"""Core domain logic for care-program alerting and billing eligibility.

This package contains the business logic and domain models,
isolated from persistence and delivery concerns for easy testing and reasoning.
"""
