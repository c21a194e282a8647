from de_explorer.mcp_server.server import main

main()
