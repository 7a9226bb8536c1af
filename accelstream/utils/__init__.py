"""Utility modules for AccelStream"""
