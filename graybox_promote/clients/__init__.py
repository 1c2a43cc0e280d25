from .http import HttpResult, TransientIOError, request_with_retry
from .sharepoint import FileData, SaveResult, SharePointClient, SharePointConfig, UploadOutcome
from .helix import HelixAdminClient, PreviewStatus
from .invoker import ActionInvoker, HttpActionInvoker, InvocationError, LocalActionInvoker

__all__ = [
    'HttpResult',
    'TransientIOError',
    'request_with_retry',
    'FileData',
    'SaveResult',
    'SharePointClient',
    'SharePointConfig',
    'UploadOutcome',
    'HelixAdminClient',
    'PreviewStatus',
    'ActionInvoker',
    'HttpActionInvoker',
    'InvocationError',
    'LocalActionInvoker',
]
