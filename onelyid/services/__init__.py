"""
Onelyid — Services Package
============================

External collaborators of the request gate, each behind a small interface:

    - http.py:         shared httpx client and the tenacity retry policy
    - store.py:        cookie secret, authorization state, token sets (SQLite)
    - id_resolver.py:  handle <-> DID resolution with caching (httpx)
    - oauth_base.py:   abstract protocol client contract
    - oauth_client.py: AT Protocol OAuth client (authorize / callback)
    - session.py:      signed session cookie and the current user's profile
"""
