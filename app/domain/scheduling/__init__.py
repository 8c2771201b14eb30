"""Scheduling domain - Appointment lifecycle automation and rescheduling"""
