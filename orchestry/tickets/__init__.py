"""Ticket lifecycle: status transitions, hierarchy and ghost-ticket blocking."""

from orchestry.tickets.ticket_manager import TicketManager

__all__ = ["TicketManager"]
