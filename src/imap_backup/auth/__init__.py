"""OAuth2 token acquisition for XOAUTH2 login."""
