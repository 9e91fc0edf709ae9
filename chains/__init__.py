"""Chain access for LIQBOT: JSON-RPC provider, Multicall3 batching, log subscriptions."""
