"""
External-service-backed inference engines and checks.
"""
