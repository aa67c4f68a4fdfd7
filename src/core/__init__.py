"""
Core business logic for video ingestion.

This module is framework-agnostic - it doesn't import FastAPI, httpx,
or FFmpeg wrappers. This separation means we can test signing and the
pipeline state machine in isolation and swap infrastructure if needed.
"""
