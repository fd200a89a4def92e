"""Identity resolution for bearer tokens issued by the sign-in provider."""
