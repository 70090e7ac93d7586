"""
Enrollbot usage-session server.

Session lifecycle, entitlement and credit accounting for the Enrollbot
course-registration client.
"""
