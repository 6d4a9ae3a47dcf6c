"""mail/ -- Outbound email for the onboarding workflow.

Layer rule: mail/ imports only stdlib, third-party libraries and core/.
auth/ and api/ import from mail/, not the other way around.
"""
