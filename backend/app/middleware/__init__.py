"""
PostSnap Backend — Middleware Package
=======================================

Request → [Request ID] → [Access Log] → [Rate Limit] → [GZip] → [CORS] → route

The request id is assigned first, so every access log line and every response,
429 rejections included, carries it. Rate limiting still runs before any
routing or body parsing.
"""
