"""Gateway models package.

  - errors.py — builders for the gateway's own error envelopes
                ({"error": "..."}): upstream failure (500), credential
                required (401), missing query parameter (400)
"""
