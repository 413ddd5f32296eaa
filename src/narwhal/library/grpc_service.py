"""
Registration of the library handler with a gRPC server.
"""

import grpc

from ..auth.permissions import LIBRARY_SERVICE
from ..rpc import method_handler
from . import messages as pb
from .handler import LibraryHandler

# method -> (request type, streaming response)
METHODS = {
    "CreateLibrary": (pb.CreateLibraryRequest, False),
    "GetLibrary": (pb.GetLibraryRequest, False),
    "ListLibraries": (pb.ListLibrariesRequest, False),
    "UpdateLibrary": (pb.UpdateLibraryRequest, False),
    "DeleteLibrary": (pb.DeleteLibraryRequest, False),
    "ScanLibrary": (pb.ScanLibraryRequest, False),
    "GetMedia": (pb.GetMediaRequest, False),
    "ListMedia": (pb.ListMediaRequest, False),
    "SearchMedia": (pb.SearchMediaRequest, False),
    "StreamMedia": (pb.StreamMediaRequest, True),
    "UpdateMedia": (pb.UpdateMediaRequest, False),
    "DeleteMedia": (pb.DeleteMediaRequest, False),
    "GetMetadata": (pb.GetMetadataRequest, False),
    "UpdateMetadata": (pb.UpdateMetadataRequest, False),
    "RefreshMetadata": (pb.RefreshMetadataRequest, False),
}


def library_service_handler(handler: LibraryHandler) -> grpc.GenericRpcHandler:
    """Build the generic RPC handler exposing every library endpoint."""
    method_handlers = {
        name: method_handler(getattr(handler, name), request_type, streaming)
        for name, (request_type, streaming) in METHODS.items()
    }
    return grpc.method_handlers_generic_handler(LIBRARY_SERVICE, method_handlers)


def add_library_service(handler: LibraryHandler, server) -> None:
    server.add_generic_rpc_handlers((library_service_handler(handler),))
