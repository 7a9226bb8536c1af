"""
AccelStream Test Suite

Test Categories:
- unit/: Fast, isolated unit tests against fakes
- integration/: API tests through the FastAPI test client
- fixtures/: Factories, fake backends and canned FFmpeg output
"""
