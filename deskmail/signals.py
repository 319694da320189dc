import django.dispatch

# Inbound email signals
ticket_created_from_email = django.dispatch.Signal()  # sender=Ticket, ticket, message, linked_ticket
customer_reply_received = django.dispatch.Signal()    # sender=Comment, comment, ticket, message
