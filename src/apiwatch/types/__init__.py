from apiwatch.types.http import Header, RequestInfo, ResponseInfo
from apiwatch.types.logs import LogRecord

__all__ = ["Header", "LogRecord", "RequestInfo", "ResponseInfo"]
