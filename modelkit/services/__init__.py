"""Service layer.

- backend_request: declarative descriptors for outbound API calls
- backend_client: executes descriptors over httpx
- oauth: OAuth client configuration
- fetch_view_model: list projection over a persisted query
"""
