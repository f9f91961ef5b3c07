"""AWS Lambda entry point.

Mangum translates API Gateway HTTP API (v2) events into ASGI. Lifespan is
left on so the credential pool and rate limiter are built on cold start.
Responses are buffered by API Gateway, so streamed generations arrive whole.
"""

from mangum import Mangum

from gemini_proxy.main import app

handler = Mangum(app, lifespan="auto")
