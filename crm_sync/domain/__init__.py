"""Domain: exceptions, enums and the provider-agnostic canonical shapes."""
