# markgate HTTP layer.
# Created: 2026-10-10
#
# create_app() builds the FastAPI application; routers live in oauth2.py
# (/register, /authorize, /token), auth.py (/auth/*) and well_known.py.
