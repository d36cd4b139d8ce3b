from onelyid.schemas.auth import CallbackResult, OAuthSession, ProfileView, SessionUser

__all__ = ["CallbackResult", "OAuthSession", "ProfileView", "SessionUser"]
