"""Business logic. Each module owns its commits; routers stay thin."""
