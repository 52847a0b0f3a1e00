"""Ticket workflow components: state machine, leases, resolver, inbox bridge, activity."""
