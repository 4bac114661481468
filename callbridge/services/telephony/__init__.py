"""Telephony services"""
