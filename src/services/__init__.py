"""Billing, reconciliation and external API integration services"""
