"""Settings models shared by the library and the command line interface."""
