from dockmux.rpc.correlation import JSONRPC_VERSION, PendingCall, RpcCorrelator, encode_message

__all__ = ["JSONRPC_VERSION", "PendingCall", "RpcCorrelator", "encode_message"]
