from sessionrelay.app import main

main()
