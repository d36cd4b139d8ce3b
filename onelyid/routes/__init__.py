"""
Onelyid — Routes Package
==========================

Route Inventory (all GET, served under the resolved prefix):
    - /client-metadata.json   OAuth client descriptor
    - /callback               completes login, sets the session cookie
    - /login?handle=<handle>  starts login, redirects to the auth server
    - /userinfo               current user, or why there is none

Routes are bound by ``RouteRegistrar`` on the first request that passes the
gate, because the prefix is only known from that request.
"""
