"""Cart, product and user microservices with a shared event bus and registry lifecycle."""
