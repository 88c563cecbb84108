"""Crowd-sourced transit incident verification service."""
