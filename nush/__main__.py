from nush.nush_cli import main

main()
