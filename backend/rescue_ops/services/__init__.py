"""Rescue Ops - Services"""
