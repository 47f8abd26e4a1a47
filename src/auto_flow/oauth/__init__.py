"""OAuth credential lifecycle: PKCE connect, encrypted storage and refresh-before-expiry."""
