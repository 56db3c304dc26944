import os

from imgresizer.middleware import index as middleware

# ASGI entry point, e.g. `uvicorn index:app`.
app = middleware.app_from_env(os.environ)
