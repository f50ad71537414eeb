# authcore Services
