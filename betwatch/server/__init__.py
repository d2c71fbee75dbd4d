from betwatch.server.server import HTTPServer

__all__ = ["HTTPServer"]
