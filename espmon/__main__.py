# (c) Copyright 2022 Aaron Kimball

import sys

from espmon import main

sys.exit(main(sys.argv[1:]))
