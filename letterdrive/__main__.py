from letterdrive.server import main

main()
