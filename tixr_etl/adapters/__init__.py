# tixr_etl/adapters/__init__.py

from .tixr import PageResult, RetryPolicy, TixrApiError, TixrClient, build_hash

__all__ = ["PageResult", "RetryPolicy", "TixrApiError", "TixrClient", "build_hash"]
