"""Poll a mailbox for attachments from allowed senders and print them."""
