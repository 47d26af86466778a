"""Tool execution gateway.

Serves JSON-RPC 2.0 (initialize, tools/list, tools/call) per tool server and
runs each tool through its handler strategy: mock, http or javascript.
"""
