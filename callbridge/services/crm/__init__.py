"""CRM services"""
