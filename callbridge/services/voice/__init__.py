"""Voice AI services"""
