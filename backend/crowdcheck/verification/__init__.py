"""Crowd-sourced incident verification: intake, scoring, publishing and moderation."""
