"""Offline-first sync and presence client for the Dialogue Atrium message log."""
