"""
Identity and session-security core.

- iam.auth: permissions, passwords, tokens, refresh ledger, providers
- iam.mfa: TOTP and email OTP second factors
- iam.sessions: use cases consumed by transport layers
- iam.services: wiring from settings
"""
