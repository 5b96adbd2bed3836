"""
LDAP User Import - Import and synchronize directory users into a local user store.

This package reads user objects from an LDAP or Active Directory server and
reconciles them into a local database table, matching records by the
directory GUID and applying disable/enable lifecycle policy.
"""

__version__ = "1.0.0"
__author__ = "LDAP Import Team"
