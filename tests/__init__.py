"""
Image target recognition test suite

Structure:
- unit/: preprocessing, fingerprints, pose, catalog codec, framing, session
- integration/: FastAPI server over HTTP and /ws, catalog build script
"""
