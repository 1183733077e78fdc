"""Core Identity Logic Module

Reconciles employee identity across the directory, the ERP roster and the
local account store, and authenticates users with directory/local fallback.

Module Structure:
    - similarity.py      : Name normalization and similarity scoring
    - matching.py        : IdentityMatcher (variant generation + all-pairs scoring)
    - directory/         : ldap3 client with fallback transports and password writes
    - reconciliation.py  : Batch ERP/local/directory reconciliation
    - authenticator.py   : Hybrid login state machine
    - password_policy.py : Password validation and strength scoring
    - service.py         : Facade used by the API and the CLI

Usage Pattern:
    Modules are not auto-imported so the CLI does not pull in Flask.

        from identity_hub.core.service import IdentityService
        from identity_hub.core.similarity import StringSimilarityEngine
"""
