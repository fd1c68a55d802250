"""
PostSnap Backend — API Routes Package
=======================================

Route Inventory:
    - posts.py:   POST   /create-post
                  GET    /create-post          (405 with usage hint)
                  GET    /posts
                  GET    /posts/{id}
                  PUT    /update-post/{id}
                  DELETE /delete-post/{id}
    - health.py:  GET    /health

Routes stay thin: parse the request, call PostService, shape the response.
"""
