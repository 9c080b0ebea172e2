"""
Authentication package for the Fleet session client.

This package contains session-related functionality including secure token
storage, the authentication exchanges, observable session state and the
session manager that coordinates sign-in, sign-out and token refresh.
"""
