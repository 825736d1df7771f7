"""Renderer process: content cache, render queue and screenshot engine."""
