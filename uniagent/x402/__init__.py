"""
x402 payment protocol support: header codec, amount units and typed-data signers.
"""
