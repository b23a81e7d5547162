"""
Services Module

Key Submodules:
- provisioning: Namespace, readiness, credential and workload composition for the fleet
"""
