from onelyid.models.auth import AuthSession, AuthState, CookieSecret

__all__ = ["AuthSession", "AuthState", "CookieSecret"]
