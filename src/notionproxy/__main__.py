from notionproxy.server import main

main()
