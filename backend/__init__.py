"""Lending API: items, borrow requests and the reservation coordinator."""
