# Services package init
"""
PostSnap Backend — Services Layer
===================================

Service Inventory:
    - StorageAdapter (abstract): upload/delete contract for the image store
    - ImageKitStorage: ImageKit REST API with retry and circuit breaker
    - PlaceholderStorage: fallback when ImageKit is not configured
    - PostService: create / list / get / update / delete orchestration
"""
