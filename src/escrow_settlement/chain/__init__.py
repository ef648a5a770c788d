"""Chain access: RPC client, retries and signature checks."""
