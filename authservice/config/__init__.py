"""Configuration module for the staff auth service."""
from .settings import AppConfig, AuthzConfig, load_authz_settings, load_settings, parse_name_list

__all__ = ["AppConfig", "AuthzConfig", "load_authz_settings", "load_settings", "parse_name_list"]
