"""Billing domain - Trials, Reveniu subscriptions and payment webhooks"""
